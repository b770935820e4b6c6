"""Core domain models.

Every stage of the narrative engine and every storage partition operates on
these types. Pydantic is used for validation and serialisation at every data
boundary. Fields are snake_case in Python; camelCase aliases are accepted on
input so records written by the legacy key-value store validate unchanged.
"""

from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NARRATOR = "narrator"

MessageType = Literal["dialogue", "action", "narration"]
ChatRole = Literal["user", "model"]
MediaType = Literal["image", "video"]
Language = Literal["zh-CN", "en-US"]
NovelStyle = Literal["STANDARD", "JIN_YONG", "CIXIN_LIU", "HEMINGWAY", "AUSTEN", "LU_XUN"]
AchievementCondition = Literal["SCRIPT_COUNT", "MESSAGE_COUNT", "CHAR_CONTROL", "TEMPLATE_CREATE"]


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds (the legacy store's unit)."""
    return int(time.time() * 1000)


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Character(_Record):
    """A cast member embedded in one Script.

    Always a snapshot: when sourced from a GlobalCharacter the descriptive
    fields are copied, and ``global_id`` only records where they came from.
    """

    id: str = Field(default_factory=new_id)
    name: str
    role: str = ""
    personality: str = ""
    speaking_style: str = ""
    visual_description: str = ""
    avatar_url: str | None = None
    is_user_controlled: bool = False
    gender: str | None = None
    age: str | None = None
    global_id: str | None = None


class GlobalCharacter(_Record):
    """A reusable character owned by a user, with long-term memories."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    gender: str = ""
    age: str = ""
    role: str = ""
    personality: str = ""
    speaking_style: str = ""
    visual_description: str = ""
    avatar_url: str | None = None
    created_at: int = Field(default_factory=now_ms)
    memories: list[str] = Field(default_factory=list)


class Message(_Record):
    """One story beat in a Script's append-only history."""

    id: str = Field(default_factory=new_id)
    character_id: str  # NARRATOR | <character id>
    content: str
    type: MessageType
    timestamp: int = Field(default_factory=now_ms)
    image_url: str | None = None


class Script(_Record):
    """A story: outline, cast snapshot and performed history."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str = "Untitled"
    premise: str = ""
    setting: str = ""
    plot_points: list[str] = Field(default_factory=list)
    possible_endings: list[str] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    history: list[Message] = Field(default_factory=list)
    current_plot_index: int = Field(default=0, ge=0)
    last_updated: int = Field(default_factory=now_ms)
    is_template: bool = False
    author: str | None = None
    novel_text: str | None = None

    def character(self, character_id: str) -> Character | None:
        for c in self.characters:
            if c.id == character_id:
                return c
        return None

    def speaker_name(self, character_id: str) -> str:
        char = self.character(character_id)
        return char.name if char else "Narrator"

    @property
    def is_complete(self) -> bool:
        return self.current_plot_index >= len(self.plot_points)


class ChatMessage(_Record):
    """A single line of a companion chat."""

    id: str = Field(default_factory=new_id)
    role: ChatRole
    content: str
    timestamp: int = Field(default_factory=now_ms)
    media_url: str | None = None
    media_type: MediaType | None = None


class ChatSession(_Record):
    """Companion chat between one user and one GlobalCharacter."""

    id: str = Field(default_factory=new_id)
    character_id: str
    user_id: str
    messages: list[ChatMessage] = Field(default_factory=list)
    last_updated: int = Field(default_factory=now_ms)


class User(_Record):
    id: str = Field(default_factory=new_id)
    username: str
    avatar: str | None = None
    created_at: int = Field(default_factory=now_ms)


class Achievement(_Record):
    id: str
    title: str
    description: str
    icon: str = ""
    condition_type: AchievementCondition
    threshold: int
    unlocked: bool = False
    unlocked_at: int | None = None
    reward: str | None = None


class AchievementBoard(_Record):
    """One user's achievement progress; ``id`` is the user's id."""

    id: str
    user_id: str
    achievements: list[Achievement] = Field(default_factory=list)
