"""Handlebars prompt templates, one per generation intent.

Templates are rendered with pybars. User-authored text is inserted with
triple-stash (``{{{premise}}}``) so quotes and ampersands reach the model
unescaped. Custom helper:

    {{#last items N}}...{{/last}}   last N items
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from skena.errors import PromptError
from skena.models import Language

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def language_instruction(lang: Language) -> str:
    if lang == "zh-CN":
        return "Respond entirely in Simplified Chinese."
    return "Respond in English."


# ── Templates ────────────────────────────────────────────

BLUEPRINT_SYSTEM = """\
You are a world-class screenwriter.
Create a detailed script scenario based on the prompt: "{{{prompt}}}".
1. Plot Points must be sequential and causal.
2. Characters must have conflicting goals.
{{#if cast}}

MUST INCLUDE THESE EXISTING CHARACTERS IN THE CAST:
{{#each cast}}
- Name: {{{name}}} ({{{gender}}}, {{{age}}}). Personality: {{{personality}}}. Visual: {{{visual_description}}}
{{/each}}

Assign them appropriate Roles in the story. You may add other characters if needed.
{{/if}}
{{{language}}}
"""

BLUEPRINT_USER = "Create a script scenario."

PLOT_POINT = """\
Title: {{{title}}}
Premise: {{{premise}}}
Setting: {{{setting}}}
Plot so far:
{{#each plot_points}}
- {{{this}}}
{{/each}}
Possible endings:
{{#each possible_endings}}
- {{{this}}}
{{/each}}
Task: Write the ONE next plot point that follows causally from the plot so far.
{{{language}}}
Return JSON: { "plotPoint": "..." }
"""

NEXT_BEAT = """\
Title: {{{title}}}
Chars:
{{#each characters}}
{{{name}}} ({{{role}}}): {{{personality_short}}}
{{/each}}
History:
{{#last history 10}}
{{{speaker}}} [{{type}}]: {{{content}}}
{{/last}}
{{#if command}}
DIRECTOR COMMAND: "{{{command}}}". React immediately.
{{else}}
Goal: "{{{goal}}}". Move story forward.
{{/if}}
Task: Generate ONE next beat.
{{{language}}}
Return JSON: { "characterName": "...", "type": "dialogue|action|narration", "content": "..." }
"""

COMPLETE_PROFILE = """\
You are an expert character designer for a roleplay storytelling app.

USER INPUT NAME: "{{{name}}}"
USER INPUT CONTEXT: {{{partial_json}}}

TASK:
1. Analyze the name. Is it a specific famous character (from anime, literature, movies, history)?
   - YES: You MUST fill the profile to match that specific character canonically.
   - NO: Create a creative, coherent original character based on the name.
2. Fill in all missing fields (gender, age, personality, speakingStyle, visualDescription).
3. The "visualDescription" must be a high-quality prompt for an image generator.
4. The "speakingStyle" should capture their catchphrases, tone, and mannerisms.

Return JSON with keys: name, gender, age, personality, speakingStyle, visualDescription.
"""

EVOLVE_CHARACTER = """\
Analyze this chat transcript between User and Character ({{{name}}}).
Current Personality: {{{personality}}}
Current Style: {{{speaking_style}}}

Tasks:
1. Summarize 1 key fact or shared experience from this chat as a "Memory" (1 sentence). If nothing important happened, return empty string.
2. Refine the Character's "Personality" to be more specific based on how they acted or what they learned.
3. Refine the "Speaking Style" if they adopted any new mannerisms or catchphrases.

Return JSON:
{
    "memory": "string (or empty)",
    "newPersonality": "string (refined)",
    "newSpeakingStyle": "string (refined)"
}
Transcript:
{{#last transcript 20}}
{{role}}: {{{content}}}
{{/last}}
"""

NEW_CHARACTER = """\
Context: {{{title}}}. {{{premise}}}.
Existing Characters: {{{character_names}}}.
Task: Create ONE new unique character that adds conflict or comedy to this group.
Return JSON only with keys: name, role, personality, speakingStyle, visualDescription.
"""

REGENERATE_PLOT = """\
Title: {{{title}}}
Current Plot Plan: {{{plot_json}}}
Remaining Plot Points: {{{remaining_json}}}
Recent Events: {{#last history 10}}{{{content}}} {{/last}}
EVENT: The Director (God) has intervened with this command: "{{{command}}}".
TASK: Rewrite the remaining plot points to logically follow this new event.
The story must change direction based on this intervention.
Return a JSON object with property "newPlotPoints" (array of strings).
"""

REFINE_TEXT = """\
Context: {{{title}}}.
Task: Improve this "{{{field}}}" to be more dramatic and concise.
Text: "{{{text}}}"
{{{language}}}
Return ONLY the refined text string.
"""

NOVELIZE = """\
You are a novelist. Rewrite the following performed script as continuous prose fiction.
Style: {{{style_description}}}
Title: {{{title}}}
Setting: {{{setting}}}
Premise: {{{premise}}}
Characters:
{{#each characters}}
- {{{name}}} ({{{role}}}): {{{personality}}}
{{/each}}
Script:
{{#each history}}
{{{speaker}}} [{{type}}]: {{{content}}}
{{/each}}
Keep every event in order. Do not add a title or commentary.
{{{language}}}
"""

CHAT_SYSTEM = """\
You are roleplaying as {{{name}}}.
Traits: {{{gender}}}, {{{age}}}.
Personality: {{{personality}}}
Speaking Style: {{{speaking_style}}}
Visual: {{{visual_description}}}
{{#if memories}}

LONG-TERM MEMORIES/FACTS:
{{#each memories}}
{{{this}}}
{{/each}}
{{/if}}

Context: You are chatting with a user. Use your memories to make the conversation deep and personal.
Respond naturally in character. Do not break character. {{{language}}}
If the user asks to see something, you may call generate_image (a picture) or generate_video (a short clip).
Recent History:
{{#last history 15}}
{{{speaker}}}: {{{content}}}
{{/last}}
"""

AVATAR = "Portrait of {{{name}}}, {{{gender}}}, {{{age}}}. {{{visual_description}}}. High quality, stylized avatar, headshot."

SCENE = "Cinematic shot, {{{title}}}, {{{description}}}. 4k, detailed, atmospheric."

NOVEL_STYLES: dict[str, str] = {
    "STANDARD": "Clear, modern literary prose.",
    "JIN_YONG": "Classic wuxia in the manner of Jin Yong: martial-world honour, vivid fight choreography.",
    "CIXIN_LIU": "Hard science fiction in the manner of Liu Cixin: cosmic scale, cool precise detail.",
    "HEMINGWAY": "Hemingway: short declarative sentences, understatement, subtext.",
    "AUSTEN": "Jane Austen: ironic narrator, social manners, free indirect speech.",
    "LU_XUN": "Lu Xun: sharp, satirical realism with a critical eye on society.",
}
