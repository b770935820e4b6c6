"""Tests for skena.models."""

import pytest
from pydantic import ValidationError

from skena.models import NARRATOR, Character, GlobalCharacter, Message, Script


class TestMessage:
    def test_invalid_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Message(character_id=NARRATOR, content="x", type="gossip")

    def test_ids_are_unique(self) -> None:
        a = Message(character_id=NARRATOR, content="x", type="narration")
        b = Message(character_id=NARRATOR, content="x", type="narration")
        assert a.id != b.id

    def test_accepts_camel_case_keys(self) -> None:
        m = Message.model_validate(
            {"id": "m1", "characterId": "c1", "content": "Hi", "type": "dialogue", "timestamp": 5}
        )
        assert m.character_id == "c1"
        assert m.timestamp == 5


class TestScript:
    def _script(self, **kw) -> Script:
        hero = Character(id="c1", name="Mira")
        return Script(owner_id="u1", characters=[hero], plot_points=["P1", "P2"], **kw)

    def test_defaults(self) -> None:
        s = Script(owner_id="u1")
        assert s.title == "Untitled"
        assert s.history == []
        assert s.current_plot_index == 0
        assert s.is_template is False

    def test_speaker_name(self) -> None:
        s = self._script()
        assert s.speaker_name("c1") == "Mira"
        assert s.speaker_name(NARRATOR) == "Narrator"
        assert s.speaker_name("ghost") == "Narrator"

    def test_negative_plot_index_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Script.model_validate({"ownerId": "u1", "plotPoints": ["a", "b"], "currentPlotIndex": -1})

    def test_is_complete(self) -> None:
        assert not self._script(current_plot_index=1).is_complete
        assert self._script(current_plot_index=2).is_complete

    def test_legacy_record_validates(self) -> None:
        raw = {
            "id": "s1", "ownerId": "u1", "title": "Old", "premise": "p", "setting": "s",
            "plotPoints": ["a"], "possibleEndings": [], "currentPlotIndex": 0,
            "lastUpdated": 1700000000000,
            "characters": [{"id": "c1", "name": "Mira", "role": "Hero", "personality": "",
                            "speakingStyle": "", "visualDescription": "", "isUserControlled": True}],
            "history": [{"id": "m1", "characterId": "narrator", "content": "Hi",
                         "type": "narration", "timestamp": 1}],
        }
        s = Script.model_validate(raw)
        assert s.owner_id == "u1"
        assert s.characters[0].is_user_controlled is True
        assert s.history[0].character_id == NARRATOR

    def test_serialise_roundtrip(self) -> None:
        s = self._script()
        assert Script.model_validate_json(s.model_dump_json()) == s


class TestGlobalCharacter:
    def test_memories_default_empty_and_not_shared(self) -> None:
        a = GlobalCharacter(owner_id="u1", name="A")
        b = GlobalCharacter(owner_id="u1", name="B")
        a.memories.append("met the user")
        assert b.memories == []
