"""Story lifecycle: blueprint, outline editing, performance, completion.

    UNINITIALIZED ─create_blueprint→ BLUEPRINTED ─begin_performance→ PERFORMING ⇄ PAUSED
                                                                         │
                                           current_plot_index past the end ▼
                                                                      COMPLETE

The phase is derived, never stored: it follows from whether a script
exists, whether it has been registered in the owner's collection, whether
play is on, and where ``current_plot_index`` points.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum

from skena.errors import StoryStateError
from skena.generation import ENDING_GOAL, Beat, GenerationClient
from skena.models import (
    NARRATOR,
    Character,
    GlobalCharacter,
    Language,
    Message,
    MessageType,
    NovelStyle,
    Script,
    new_id,
    now_ms,
)
from skena.storage.library import Collection

logger = logging.getLogger(__name__)

REFINABLE_FIELDS = ("title", "premise", "setting")


class StoryPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    BLUEPRINTED = "blueprinted"
    PERFORMING = "performing"
    PAUSED = "paused"
    COMPLETE = "complete"


def opening_narration(setting: str, premise: str, lang: Language) -> str:
    if lang == "zh-CN":
        return f"场景开始于{setting}。{premise}"
    return f"The scene opens in {setting}. {premise}"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def create_template(owner_id: str, title: str, author: str | None = None) -> Script:
    """An empty, non-playable script other scripts can be started from."""
    return Script(owner_id=owner_id, title=title or "Untitled", is_template=True, author=author)


COMMUNITY_OWNER = "system"


def community_templates() -> list[Script]:
    """The built-in templates anyone can start a script from. Fresh objects per call."""
    return [
        Script(
            id="comm-1",
            owner_id=COMMUNITY_OWNER,
            title="赛博朋克侦探 (Cyberpunk Detective)",
            premise="在2077年的新上海，一名落魄侦探接到了一起涉及仿生人谋杀的案件。",
            setting="Neon-lit rainy streets of Neo-Shanghai",
            plot_points=["发现关键证据芯片", "被黑帮追杀", "揭露市长的阴谋"],
            possible_endings=["加入反抗军", "独自逃离城市"],
            characters=[
                Character(
                    id="c1", name="K", role="Detective",
                    personality="Cynical, observant, tired",
                    speaking_style="Short sentences, noir monologue style",
                    visual_description="Cyberpunk detective with trench coat",
                ),
                Character(
                    id="c2", name="Aria", role="Hacker",
                    personality="Energetic, paranoid",
                    speaking_style="Fast, uses tech slang",
                    visual_description="Punk girl with glowing goggles",
                ),
            ],
            is_template=True,
            author="SkenaOfficial",
        ),
        Script(
            id="comm-2",
            owner_id=COMMUNITY_OWNER,
            title="宫廷风云 (Imperial Palace)",
            premise="老皇帝病危，太子与三皇子争夺皇位，后宫嫔妃站队。",
            setting="Ancient Imperial Palace Throne Room",
            plot_points=["皇帝立下遗诏", "御林军叛变", "毒酒宴会"],
            possible_endings=["太子继位", "三皇子篡位", "王朝覆灭"],
            characters=[
                Character(
                    id="c3", name="Li Cheng", role="Crown Prince",
                    personality="Noble but indecisive",
                    speaking_style="Formal, archaic court language",
                    visual_description="Ancient prince in gold robes",
                ),
                Character(
                    id="c4", name="Consort Wu", role="Schemer",
                    personality="Manipulative, charming",
                    speaking_style="Polite but full of double meanings",
                    visual_description="Beautiful empress in red silk",
                ),
            ],
            is_template=True,
            author="HistoryBuff",
        ),
    ]


def script_from_template(template: Script, owner_id: str) -> Script:
    """Start a fresh playable script from ``template``.

    The copy is deep: editing it never touches the template's lists.
    """
    copy = template.model_copy(deep=True)
    return copy.model_copy(update={
        "id": new_id(),
        "owner_id": owner_id,
        "title": f"{template.title} (Play)",
        "is_template": False,
        "author": None,
        "history": [Message(
            character_id=NARRATOR,
            type="narration",
            content=f"The story begins... {template.premise}",
        )],
        "current_plot_index": 0,
        "novel_text": None,
        "last_updated": now_ms(),
    })


# ---------------------------------------------------------------------------
# StorySession
# ---------------------------------------------------------------------------

class StorySession:
    """One owner's work on one script.

    Args:
        owner_id:   Explicit owner; nothing reads an ambient current user.
        scripts:    The owner's script collection. A script joins it when
                    performance begins and is saved through it afterwards.
        client:     Generation client used for every AI step.
        script:     Resume an existing script instead of starting blank.
        language:   Output language; defaults to the client's setting.
    """

    def __init__(
        self,
        owner_id: str,
        scripts: Collection[Script],
        client: GenerationClient,
        script: Script | None = None,
        language: Language | None = None,
    ) -> None:
        if scripts.owner_id != owner_id:
            raise ValueError(f"Collection belongs to {scripts.owner_id!r}, not {owner_id!r}")
        if script is not None and script.owner_id != owner_id:
            raise ValueError(f"Script {script.id} is owned by {script.owner_id!r}")
        self.owner_id = owner_id
        self.scripts = scripts
        self.client = client
        self.script = script
        self.language: Language = language or client.settings.language
        self.is_playing = False
        self._registered = script is not None and script.id in scripts

    # ── state ─────────────────────────────────────────────

    @property
    def phase(self) -> StoryPhase:
        if self.script is None:
            return StoryPhase.UNINITIALIZED
        if not self._registered:
            return StoryPhase.BLUEPRINTED
        if self.script.is_complete:
            return StoryPhase.COMPLETE
        return StoryPhase.PERFORMING if self.is_playing else StoryPhase.PAUSED

    @property
    def registered(self) -> bool:
        return self._registered

    def _require_script(self) -> Script:
        if self.script is None:
            raise StoryStateError("No script yet; create a blueprint first")
        return self.script

    def persist(self) -> None:
        """Save the script through the owner's collection, once registered.

        StoreTransactionFailure propagates; the in-memory script stays as is
        and the next save converges again.
        """
        if not self._registered or self.script is None:
            return
        self.script.last_updated = now_ms()
        self.scripts.upsert(self.script)
        self.scripts.save()

    # ── blueprint ─────────────────────────────────────────

    async def create_blueprint(self, premise: str, cast: Sequence[GlobalCharacter] = ()) -> Script:
        """Generate the script skeleton and seed its opening narration."""
        if self.script is not None:
            raise StoryStateError("This session already has a script")
        blueprint = await self.client.generate_blueprint(premise, cast, self.language)
        opening = Message(
            character_id=NARRATOR,
            type="narration",
            content=opening_narration(blueprint.setting, blueprint.premise, self.language),
        )
        self.script = Script(
            owner_id=self.owner_id,
            title=blueprint.title,
            premise=blueprint.premise,
            setting=blueprint.setting,
            plot_points=blueprint.plot_points,
            possible_endings=blueprint.possible_endings,
            characters=blueprint.characters,
            history=[opening],
            current_plot_index=0,
        )
        logger.info(
            "Blueprint %r: %d plot points, %d characters",
            self.script.title, len(self.script.plot_points), len(self.script.characters),
        )
        return self.script

    # ── outline editing ───────────────────────────────────

    def add_plot_point(self, text: str) -> None:
        script = self._require_script()
        text = text.strip()
        if text:
            script.plot_points.append(text)
            self.persist()

    def edit_plot_point(self, index: int, text: str) -> None:
        script = self._require_script()
        if not 0 <= index < len(script.plot_points):
            raise IndexError(f"No plot point {index}")
        script.plot_points[index] = text.strip()
        self.persist()

    def remove_plot_point(self, index: int) -> None:
        """Drop one plot point; the current index keeps pointing at the same goal."""
        script = self._require_script()
        if not 0 <= index < len(script.plot_points):
            raise IndexError(f"No plot point {index}")
        del script.plot_points[index]
        if index < script.current_plot_index:
            script.current_plot_index -= 1
        script.current_plot_index = min(script.current_plot_index, len(script.plot_points))
        self.persist()

    async def generate_plot_point(self) -> str:
        """Append one AI-written plot point. A blank result appends nothing."""
        script = self._require_script()
        point = await self.client.generate_plot_point(script, self.language)
        if point:
            script.plot_points.append(point)
            self.persist()
        else:
            logger.warning("Plot point generation returned nothing for %r", script.title)
        return point

    # ── cast ──────────────────────────────────────────────

    async def add_generated_character(self) -> Character:
        script = self._require_script()
        character = await self.client.generate_character(script)
        script.characters.append(character)
        self.persist()
        return character

    def add_character(self, character: Character) -> None:
        self._require_script().characters.append(character)
        self.persist()

    def remove_character(self, character_id: str) -> bool:
        script = self._require_script()
        before = len(script.characters)
        script.characters = [c for c in script.characters if c.id != character_id]
        removed = len(script.characters) != before
        if removed:
            self.persist()
        return removed

    def _character(self, character_id: str) -> Character:
        character = self._require_script().character(character_id)
        if character is None:
            raise StoryStateError(f"No character {character_id} in this script")
        return character

    def set_user_controlled(self, character_id: str, controlled: bool = True) -> None:
        self._character(character_id).is_user_controlled = controlled
        self.persist()

    def set_avatar(self, character_id: str, avatar_url: str) -> None:
        self._character(character_id).avatar_url = avatar_url
        self.persist()

    async def generate_avatar(self, character_id: str) -> str:
        character = self._character(character_id)
        url = await self.client.generate_avatar(character)
        character.avatar_url = url
        self.persist()
        return url

    # ── performance ───────────────────────────────────────

    def begin_performance(self) -> None:
        """Register the script with the owner's collection and start play."""
        script = self._require_script()
        if not script.plot_points:
            raise StoryStateError("Add at least one plot point before performing")
        self._registered = True
        self.persist()
        self.is_playing = True
        logger.info("Performance of %r started", script.title)

    def play(self) -> None:
        if not self._registered:
            raise StoryStateError("Performance has not begun")
        self.is_playing = True

    def pause(self) -> None:
        self.is_playing = False

    def next_chapter(self) -> int:
        """Advance to the next plot point, stopping one past the end."""
        script = self._require_script()
        script.current_plot_index = min(script.current_plot_index + 1, len(script.plot_points))
        self.persist()
        return script.current_plot_index

    def resolve_goal(self, command: str | None = None) -> str:
        """The director command if given, else the current plot point, else the ending."""
        if command:
            return command
        script = self._require_script()
        if script.is_complete:
            return ENDING_GOAL
        return script.plot_points[script.current_plot_index]

    def append_beat(self, beat: Beat, image_url: str | None = None) -> Message:
        return self._append(beat.character_id, beat.type, beat.content, image_url)

    def speak(self, character_id: str, text: str) -> Message | None:
        """Append a line for a user-controlled character. Blank text is ignored."""
        character = self._character(character_id)
        if not character.is_user_controlled:
            raise StoryStateError(f"{character.name} is not controlled by the user")
        text = text.strip()
        if not text:
            return None
        return self._append(character_id, "dialogue", text)

    def _append(
        self, character_id: str, kind: MessageType, content: str, image_url: str | None = None,
    ) -> Message:
        script = self._require_script()
        timestamp = now_ms()
        if script.history:
            timestamp = max(timestamp, script.history[-1].timestamp + 1)
        message = Message(
            character_id=character_id, type=kind, content=content,
            timestamp=timestamp, image_url=image_url,
        )
        script.history.append(message)
        self.persist()
        return message

    # ── rewriting ─────────────────────────────────────────

    async def rewrite_future_plot(self, command: str) -> list[str]:
        """Replace the outline from the current index on; recorded history is untouched."""
        script = self._require_script()
        new_points = await self.client.regenerate_future_plot(script, command)
        script.plot_points = script.plot_points[:script.current_plot_index] + new_points
        self.persist()
        return script.plot_points

    async def refine(self, field: str) -> str:
        if field not in REFINABLE_FIELDS:
            raise ValueError(f"Cannot refine {field!r}")
        script = self._require_script()
        refined = await self.client.refine_text(getattr(script, field), field, script, self.language)
        setattr(script, field, refined)
        self.persist()
        return refined

    async def novelize(self, style: NovelStyle = "STANDARD") -> str:
        script = self._require_script()
        text = await self.client.novelize(script, style, self.language)
        script.novel_text = text
        self.persist()
        return text
