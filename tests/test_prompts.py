"""Tests for Handlebars prompt rendering: helpers, escaping, and the intent templates."""

import pytest

from skena import prompts
from skena.errors import PromptError
from skena.prompts import language_instruction, render_prompt


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{name}}!", {"name": "World"}) == "Hello World!"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_triple_stash_not_escaped():
    assert render_prompt("{{{t}}}", {"t": 'Tom & "Jerry"'}) == 'Tom & "Jerry"'


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


# ── helpers ──────────────────────────────────────────────────


def test_last_helper():
    tpl = "{{#last items 2}}{{this}} {{/last}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == "b c "


def test_every_helper_is_used_by_a_template():
    templates = [v for k, v in vars(prompts).items() if k.isupper() and isinstance(v, str)]
    for name in prompts._HELPERS:
        assert any("{{#" + name + " " in t for t in templates), name



# ── templates ────────────────────────────────────────────────


def test_next_beat_keeps_last_ten():
    history = [{"speaker": "Narrator", "type": "narration", "content": f"line{i}"} for i in range(15)]
    out = render_prompt(prompts.NEXT_BEAT, {
        "title": "T", "characters": [], "history": history,
        "command": None, "goal": "Reach the gate", "language": language_instruction("en-US"),
    })
    assert "line4" not in out
    assert "line5" in out and "line14" in out
    assert 'Goal: "Reach the gate"' in out
    assert "DIRECTOR COMMAND" not in out


def test_next_beat_director_command():
    out = render_prompt(prompts.NEXT_BEAT, {
        "title": "T", "characters": [], "history": [],
        "command": "it starts raining", "goal": "it starts raining", "language": "",
    })
    assert 'DIRECTOR COMMAND: "it starts raining"' in out
    assert "Goal:" not in out


def test_blueprint_system_lists_cast():
    cast = [{"name": "Mira", "gender": "F", "age": "30", "personality": "bold",
             "visual_description": "red cloak"}]
    out = render_prompt(prompts.BLUEPRINT_SYSTEM, {"prompt": "heist", "cast": cast, "language": ""})
    assert "MUST INCLUDE THESE EXISTING CHARACTERS" in out
    assert "Mira (F, 30)" in out


def test_blueprint_system_without_cast():
    out = render_prompt(prompts.BLUEPRINT_SYSTEM, {"prompt": "heist", "cast": [], "language": ""})
    assert "MUST INCLUDE" not in out


def test_chat_system_memories():
    out = render_prompt(prompts.CHAT_SYSTEM, {
        "name": "Mira", "memories": ["We met in the rain."], "history": [],
    })
    assert "LONG-TERM MEMORIES" in out
    assert "We met in the rain." in out


def test_language_instruction():
    assert "Chinese" in language_instruction("zh-CN")
    assert "English" in language_instruction("en-US")
