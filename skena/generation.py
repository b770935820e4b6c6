"""Generation client: one facade over both providers for every intent.

Each intent renders its prompt, sends it to the provider chosen by
``Settings.provider`` under a timeout race and bounded retry, and passes the
reply through the normalizer so callers only ever see the types defined here
or in ``skena.models``:

    generate_blueprint          → Blueprint
    generate_plot_point         → str
    generate_next_beat          → Beat
    complete_character_profile  → GlobalCharacter
    evolve_character            → Evolution
    generate_character          → Character
    regenerate_future_plot      → list[str]
    refine_text / novelize      → str
    chat_with_character         → ChatReply   (tool mode: image/video)
    generate_image / generate_avatar / generate_scene_image → data URL
    generate_video              → video URI   (submit + poll)

Images and video are always served by the structured provider.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from skena import prompts
from skena.config import ProviderKind, Settings
from skena.errors import (
    GenerationError,
    GenerationTimeout,
    MalformedResponse,
    SkenaError,
    ToolSideEffectFailure,
)
from skena.llm import (
    ChatProvider,
    Provider,
    ProviderReply,
    ProviderRequest,
    StructuredProvider,
    ToolCall,
    ToolSpec,
)
from skena.models import (
    NARRATOR,
    Character,
    ChatMessage,
    GlobalCharacter,
    Language,
    MediaType,
    MessageType,
    NovelStyle,
    Script,
)
from skena.normalizer import normalize
from skena.resilience import Sleep, with_retry, with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENDING_GOAL = "Ending"

BEAT_CONTEXT = 10
CHAT_CONTEXT = 15
EVOLVE_CONTEXT = 20
SCENE_DESCRIPTION_LIMIT = 300


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class _Draft(BaseModel):
    """Raw provider output. camelCase aliases match the keys we ask for."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CharacterDraft(_Draft):
    name: str = "Unknown"
    role: str = "Extra"
    personality: str = "Neutral"
    speaking_style: str = "Normal"
    visual_description: str = "A person"


class BlueprintDraft(_Draft):
    title: str = "Untitled"
    premise: str = ""
    setting: str = ""
    plot_points: list[str] = Field(default_factory=list)
    possible_endings: list[str] = Field(default_factory=list)
    characters: list[CharacterDraft] = Field(default_factory=list)


class Blueprint(BaseModel):
    title: str
    premise: str
    setting: str
    plot_points: list[str]
    possible_endings: list[str]
    characters: list[Character]


class PlotPointDraft(_Draft):
    plot_point: str = ""


class BeatDraft(_Draft):
    character_name: str = "Narrator"
    type: MessageType = "narration"
    content: str = "..."


class Beat(BaseModel):
    """A generated beat, not yet placed in a Script's history."""

    character_id: str
    type: MessageType
    content: str


class ProfileDraft(_Draft):
    name: str = ""
    gender: str = ""
    age: str = ""
    personality: str = ""
    speaking_style: str = ""
    visual_description: str = ""


class EvolutionDraft(_Draft):
    memory: str = ""
    new_personality: str = ""
    new_speaking_style: str = ""


class Evolution(BaseModel):
    memory: str
    personality: str
    speaking_style: str


class PlotRewriteDraft(_Draft):
    new_plot_points: list[str] = Field(default_factory=list)


class ChatReply(BaseModel):
    text: str
    media_url: str | None = None
    media_type: MediaType | None = None


# ---------------------------------------------------------------------------
# Declared output schemas (Gemini schema dialect; described in-band for chat)
# ---------------------------------------------------------------------------

_STRING = {"type": "STRING"}
_STRINGS = {"type": "ARRAY", "items": _STRING}

_CHARACTER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": _STRING,
        "role": _STRING,
        "personality": _STRING,
        "speakingStyle": _STRING,
        "visualDescription": _STRING,
    },
    "required": ["name", "role", "personality", "speakingStyle", "visualDescription"],
}

BLUEPRINT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": _STRING,
        "premise": _STRING,
        "setting": _STRING,
        "plotPoints": _STRINGS,
        "possibleEndings": _STRINGS,
        "characters": {"type": "ARRAY", "items": _CHARACTER_SCHEMA},
    },
}

PLOT_POINT_SCHEMA = {"type": "OBJECT", "properties": {"plotPoint": _STRING}}

BEAT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "characterName": _STRING,
        "type": {"type": "STRING", "enum": ["dialogue", "action", "narration"]},
        "content": _STRING,
    },
}

PROFILE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": _STRING,
        "gender": _STRING,
        "age": _STRING,
        "personality": _STRING,
        "speakingStyle": _STRING,
        "visualDescription": _STRING,
    },
}

EVOLUTION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "memory": _STRING,
        "newPersonality": _STRING,
        "newSpeakingStyle": _STRING,
    },
}

PLOT_REWRITE_SCHEMA = {"type": "OBJECT", "properties": {"newPlotPoints": _STRINGS}}

_PROMPT_PARAMETERS = {
    "type": "object",
    "properties": {"prompt": {"type": "string", "description": "What to depict."}},
    "required": ["prompt"],
}

MEDIA_TOOLS = [
    ToolSpec(
        name="generate_image",
        description="Create a picture to show the user, e.g. a selfie or the place you are in.",
        parameters=_PROMPT_PARAMETERS,
    ),
    ToolSpec(
        name="generate_video",
        description="Create a short video clip to show the user.",
        parameters=_PROMPT_PARAMETERS,
    ),
]

_TOOL_MEDIA: dict[str, MediaType] = {"generate_image": "image", "generate_video": "video"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def match_global_character(name: str, cast: Sequence[GlobalCharacter]) -> GlobalCharacter | None:
    """Find the global character a generated name refers to.

    Case-insensitive substring containment in either direction, first match
    wins. A heuristic: short names ("Al") can claim unrelated ones ("Alice").
    """
    needle = name.strip().lower()
    if not needle:
        return None
    for candidate in cast:
        known = candidate.name.strip().lower()
        if known and (known in needle or needle in known):
            return candidate
    return None


def snapshot_character(source: GlobalCharacter, role: str) -> Character:
    """Copy a global character into a script-owned Character."""
    return Character(
        name=source.name,
        role=role or source.role,
        personality=source.personality,
        speaking_style=source.speaking_style,
        visual_description=source.visual_description,
        avatar_url=source.avatar_url,
        gender=source.gender,
        age=source.age,
        global_id=source.id,
    )


def _character_from_draft(draft: CharacterDraft) -> Character:
    return Character(
        name=draft.name or "Unknown",
        role=draft.role or "Extra",
        personality=draft.personality or "Neutral",
        speaking_style=draft.speaking_style or "Normal",
        visual_description=draft.visual_description or "A person",
    )


def _history_lines(script: Script, limit: int | None = None) -> list[dict]:
    messages = script.history if limit is None else script.history[-limit:]
    return [
        {"speaker": script.speaker_name(m.character_id), "type": m.type, "content": m.content}
        for m in messages
    ]


def _apology(text: str, media: str, lang: Language) -> str:
    if lang == "zh-CN":
        note = f"（抱歉……我本想给你看一段{'视频' if media == 'video' else '图片'}，但这次没能做出来。）"
    else:
        note = f"(Sorry... I tried to show you a{' video' if media == 'video' else 'n image'}, but I couldn't make it this time.)"
    return f"{text}\n\n{note}" if text else note


# ---------------------------------------------------------------------------
# GenerationClient
# ---------------------------------------------------------------------------

class GenerationClient:
    """Provider-agnostic facade over the structured and plain backends.

    Args:
        settings:   Provider choice, credentials, timeouts and retry budget.
        structured: Override the structured provider (tests inject stubs).
        plain:      Override the plain chat provider.
        sleep:      Coroutine used for backoff and poll waits.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        structured: StructuredProvider | None = None,
        plain: Provider | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.structured = structured or StructuredProvider(
            api_key=settings.structured_api_key,
            base_url=settings.structured_base_url,
            model=settings.text_model,
            image_model=settings.image_model,
            video_model=settings.video_model,
        )
        self.plain = plain or ChatProvider(
            api_key=settings.plain_api_key,
            base_url=settings.plain_base_url,
            model=settings.plain_model,
        )
        self._sleep = sleep

    # ── plumbing ──────────────────────────────────────────

    def _provider(self) -> Provider:
        if self.settings.provider == ProviderKind.PLAIN:
            return self.plain
        return self.structured

    async def _call(self, stage: str, fn: Callable[[], Awaitable[T]], timeout: float) -> T:
        """Run one provider call under the timeout race and retry policy."""
        return await with_retry(
            lambda: with_timeout(fn(), timeout, stage),
            retries=self.settings.retries,
            base_delay=self.settings.retry_base_delay,
            sleep=self._sleep,
            stage=stage,
        )

    async def _complete(self, request: ProviderRequest, timeout: float | None = None) -> ProviderReply:
        provider = self._provider()
        try:
            return await self._call(
                request.stage,
                lambda: provider.complete(request),
                timeout or self.settings.text_timeout,
            )
        except MalformedResponse as e:
            logger.warning("%s: malformed provider response (%s); using defaults", request.stage, e)
            return ProviderReply()

    async def _structured(self, stage: str, prompt: str, schema: dict, fallback, *, system: str = ""):
        request = ProviderRequest(
            stage=stage, prompt=prompt, system=system, output_schema=schema, json_mode=True,
        )
        reply = await self._complete(request)
        return normalize(reply.text, fallback)

    async def _text(self, stage: str, prompt: str) -> str:
        reply = await self._complete(ProviderRequest(stage=stage, prompt=prompt))
        return reply.text.strip()

    def _lang(self, lang: Language | None) -> Language:
        return lang or self.settings.language

    # ── story intents ─────────────────────────────────────

    async def generate_blueprint(
        self,
        prompt: str,
        cast: Sequence[GlobalCharacter] = (),
        lang: Language | None = None,
    ) -> Blueprint:
        """Create a script skeleton; generated characters that match ``cast`` are snapshots of it."""
        system = prompts.render_prompt(prompts.BLUEPRINT_SYSTEM, {
            "prompt": prompt,
            "cast": [c.model_dump() for c in cast],
            "language": prompts.language_instruction(self._lang(lang)),
        })
        draft = await self._structured(
            "blueprint", prompts.BLUEPRINT_USER, BLUEPRINT_SCHEMA, BlueprintDraft(), system=system,
        )

        characters: list[Character] = []
        for c in draft.characters:
            match = match_global_character(c.name, cast)
            characters.append(snapshot_character(match, c.role) if match else _character_from_draft(c))

        return Blueprint(
            title=draft.title or "Untitled",
            premise=draft.premise or prompt,
            setting=draft.setting,
            plot_points=draft.plot_points,
            possible_endings=draft.possible_endings,
            characters=characters,
        )

    async def generate_plot_point(self, script: Script, lang: Language | None = None) -> str:
        """Return the next plot point for the outline, or "" if the provider gave nothing usable."""
        prompt = prompts.render_prompt(prompts.PLOT_POINT, {
            "title": script.title,
            "premise": script.premise,
            "setting": script.setting,
            "plot_points": script.plot_points,
            "possible_endings": script.possible_endings,
            "language": prompts.language_instruction(self._lang(lang)),
        })
        draft = await self._structured("plot_point", prompt, PLOT_POINT_SCHEMA, PlotPointDraft())
        return draft.plot_point.strip()

    async def generate_next_beat(
        self,
        script: Script,
        *,
        command: str | None = None,
        goal: str | None = None,
        lang: Language | None = None,
    ) -> Beat:
        """Generate one beat steering toward ``goal``, or reacting to a director ``command``."""
        prompt = prompts.render_prompt(prompts.NEXT_BEAT, {
            "title": script.title,
            "characters": [
                {"name": c.name, "role": c.role, "personality_short": c.personality[:50]}
                for c in script.characters
            ],
            "history": _history_lines(script, BEAT_CONTEXT),
            "command": command,
            "goal": goal or ENDING_GOAL,
            "language": prompts.language_instruction(self._lang(lang)),
        })
        draft = await self._structured("next_beat", prompt, BEAT_SCHEMA, BeatDraft())

        character_id = NARRATOR
        if draft.character_name != "Narrator":
            for c in script.characters:
                if c.name == draft.character_name:
                    character_id = c.id
                    break
        return Beat(character_id=character_id, type=draft.type, content=draft.content or "...")

    async def regenerate_future_plot(self, script: Script, command: str) -> list[str]:
        """Rewrite the outline from the current plot point on, after a director intervention."""
        remaining = script.plot_points[script.current_plot_index:]
        prompt = prompts.render_prompt(prompts.REGENERATE_PLOT, {
            "title": script.title,
            "plot_json": json.dumps(script.plot_points, ensure_ascii=False),
            "remaining_json": json.dumps(remaining, ensure_ascii=False),
            "history": _history_lines(script, BEAT_CONTEXT),
            "command": command,
        })
        draft = await self._structured(
            "regenerate_plot", prompt, PLOT_REWRITE_SCHEMA, PlotRewriteDraft(new_plot_points=remaining),
        )
        return [p for p in draft.new_plot_points if isinstance(p, str) and p.strip()] or remaining

    async def generate_character(self, script: Script) -> Character:
        """Invent one new cast member that fits the script."""
        prompt = prompts.render_prompt(prompts.NEW_CHARACTER, {
            "title": script.title,
            "premise": script.premise,
            "character_names": ", ".join(c.name for c in script.characters),
        })
        fallback = CharacterDraft(
            name="New Character", role="Mystery", personality="Unknown",
            speaking_style="Quiet", visual_description="Blurry",
        )
        draft = await self._structured("new_character", prompt, _CHARACTER_SCHEMA, fallback)
        return Character(
            name=draft.name,
            role=draft.role,
            personality=draft.personality,
            speaking_style=draft.speaking_style,
            visual_description=draft.visual_description,
        )

    async def refine_text(
        self, text: str, field: str, script: Script, lang: Language | None = None,
    ) -> str:
        prompt = prompts.render_prompt(prompts.REFINE_TEXT, {
            "title": script.title,
            "field": field,
            "text": text,
            "language": prompts.language_instruction(self._lang(lang)),
        })
        return await self._text("refine", prompt) or text

    async def novelize(
        self, script: Script, style: NovelStyle = "STANDARD", lang: Language | None = None,
    ) -> str:
        """Rewrite the performed history as continuous prose."""
        prompt = prompts.render_prompt(prompts.NOVELIZE, {
            "style_description": prompts.NOVEL_STYLES.get(style, prompts.NOVEL_STYLES["STANDARD"]),
            "title": script.title,
            "setting": script.setting,
            "premise": script.premise,
            "characters": [c.model_dump() for c in script.characters],
            "history": _history_lines(script),
            "language": prompts.language_instruction(self._lang(lang)),
        })
        return await self._text("novelize", prompt)

    # ── character intents ─────────────────────────────────

    async def complete_character_profile(self, partial: GlobalCharacter) -> GlobalCharacter:
        """Fill the blanks of a name-first character. Non-empty provider values win."""
        prompt = prompts.render_prompt(prompts.COMPLETE_PROFILE, {
            "name": partial.name or "Unknown",
            "partial_json": partial.model_dump_json(by_alias=True, exclude={"memories"}),
        })
        fallback = ProfileDraft(
            name=partial.name,
            gender=partial.gender,
            age=partial.age,
            personality=partial.personality,
            speaking_style=partial.speaking_style,
            visual_description=partial.visual_description,
        )
        draft = await self._structured("complete_profile", prompt, PROFILE_SCHEMA, fallback)
        return partial.model_copy(update=draft.model_dump())

    async def evolve_character(
        self, character: GlobalCharacter, recent: Sequence[ChatMessage],
    ) -> Evolution:
        """Summarise a chat into one memory and refined personality/style."""
        prompt = prompts.render_prompt(prompts.EVOLVE_CHARACTER, {
            "name": character.name,
            "personality": character.personality,
            "speaking_style": character.speaking_style,
            "transcript": [{"role": m.role, "content": m.content} for m in recent[-EVOLVE_CONTEXT:]],
        })
        draft = await self._structured(
            "evolve_character", prompt, EVOLUTION_SCHEMA,
            EvolutionDraft(
                new_personality=character.personality,
                new_speaking_style=character.speaking_style,
            ),
        )
        return Evolution(
            memory=draft.memory.strip(),
            personality=draft.new_personality,
            speaking_style=draft.new_speaking_style,
        )

    async def chat_with_character(
        self,
        character: GlobalCharacter,
        history: Sequence[ChatMessage],
        user_message: str,
        lang: Language | None = None,
    ) -> ChatReply:
        """Reply in character. The model may call an image/video tool.

        A failed tool never fails the reply: the text comes back with an
        in-character apology and no media.
        """
        system = prompts.render_prompt(prompts.CHAT_SYSTEM, {
            "name": character.name,
            "gender": character.gender,
            "age": character.age,
            "personality": character.personality,
            "speaking_style": character.speaking_style,
            "visual_description": character.visual_description,
            "memories": character.memories,
            "history": [
                {"speaker": "User" if m.role == "user" else character.name, "content": m.content}
                for m in history[-CHAT_CONTEXT:]
            ],
            "language": prompts.language_instruction(self._lang(lang)),
        })
        request = ProviderRequest(stage="chat", system=system, prompt=user_message, tools=MEDIA_TOOLS)
        reply = await self._complete(request, self.settings.chat_timeout)
        text = reply.text.strip()

        if not reply.tool_calls:
            return ChatReply(text=text or "...")

        call = reply.tool_calls[0]
        media_type = _TOOL_MEDIA.get(call.name, "image")
        try:
            media_url = await self._run_tool(call)
        except ToolSideEffectFailure as e:
            logger.warning("chat tool %s failed: %s", call.name, e)
            return ChatReply(text=_apology(text, media_type, self._lang(lang)))
        return ChatReply(text=text or "...", media_url=media_url, media_type=media_type)

    async def _run_tool(self, call: ToolCall) -> str:
        prompt = str(call.arguments.get("prompt") or "").strip()
        if call.name not in _TOOL_MEDIA:
            raise ToolSideEffectFailure(f"Unknown tool {call.name!r}")
        if not prompt:
            raise ToolSideEffectFailure(f"Tool {call.name} called without a prompt")
        try:
            if call.name == "generate_video":
                return await self.generate_video(prompt)
            return await self.generate_image(prompt)
        except SkenaError as e:
            raise ToolSideEffectFailure(f"{call.name} failed: {e}") from e

    # ── media ─────────────────────────────────────────────

    async def generate_image(self, prompt: str) -> str:
        return await self._call(
            "image", lambda: self.structured.generate_image(prompt), self.settings.image_timeout,
        )

    async def generate_avatar(self, character: Character | GlobalCharacter) -> str:
        prompt = prompts.render_prompt(prompts.AVATAR, {
            "name": character.name,
            "gender": character.gender or "",
            "age": character.age or "",
            "visual_description": character.visual_description,
        })
        return await self.generate_image(prompt)

    async def generate_scene_image(self, description: str, title: str) -> str:
        prompt = prompts.render_prompt(prompts.SCENE, {
            "title": title,
            "description": description[:SCENE_DESCRIPTION_LIMIT],
        })
        return await self.generate_image(prompt)

    async def generate_video(self, prompt: str) -> str:
        """Submit a video operation and poll until done.

        Polls every ``video_poll_interval`` seconds, at most
        ``video_poll_attempts`` times, then fails with GenerationTimeout.
        """
        timeout = self.settings.text_timeout
        operation = await self._call("video", lambda: self.structured.start_video(prompt), timeout)
        attempts = self.settings.video_poll_attempts
        for attempt in range(1, attempts + 1):
            await self._sleep(self.settings.video_poll_interval)
            status = await self._call("video_poll", lambda: self.structured.poll_video(operation), timeout)
            if not status.done:
                logger.debug("video %s pending (poll %d/%d)", operation, attempt, attempts)
                continue
            if status.error or not status.uri:
                raise GenerationError(f"Video generation failed: {status.error or 'no video returned'}")
            return status.uri
        raise GenerationTimeout(f"Video generation not finished after {attempts} polls")
