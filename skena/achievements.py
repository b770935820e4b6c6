"""Achievements unlocked from what a user has done with their scripts."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from skena.models import Achievement, AchievementCondition, Script, now_ms
from skena.storage.library import Library

logger = logging.getLogger(__name__)


def default_achievements() -> list[Achievement]:
    """A fresh, fully locked achievement set."""
    return [
        Achievement(
            id="first_script", title="Debut", description="Create your first script.",
            icon="🎬", condition_type="SCRIPT_COUNT", threshold=1,
        ),
        Achievement(
            id="prolific", title="Prolific Writer", description="Create five scripts.",
            icon="📚", condition_type="SCRIPT_COUNT", threshold=5, reward="Unlocks novel styles",
        ),
        Achievement(
            id="chatterbox", title="Method Actor", description="Speak 20 lines as your own characters.",
            icon="🎭", condition_type="MESSAGE_COUNT", threshold=20,
        ),
        Achievement(
            id="take_control", title="On Stage", description="Take control of a character.",
            icon="🕹️", condition_type="CHAR_CONTROL", threshold=1,
        ),
        Achievement(
            id="template_maker", title="Architect", description="Publish a script template.",
            icon="🏛️", condition_type="TEMPLATE_CREATE", threshold=1,
        ),
    ]


@dataclass
class Stats:
    script_count: int = 0
    message_count: int = 0
    controlled_scripts: int = 0
    template_count: int = 0

    def value(self, condition: AchievementCondition) -> int:
        return {
            "SCRIPT_COUNT": self.script_count,
            "MESSAGE_COUNT": self.message_count,
            "CHAR_CONTROL": self.controlled_scripts,
            "TEMPLATE_CREATE": self.template_count,
        }[condition]


def collect_stats(scripts: Iterable[Script]) -> Stats:
    stats = Stats()
    for script in scripts:
        if script.is_template:
            stats.template_count += 1
            continue
        stats.script_count += 1
        controlled = {c.id for c in script.characters if c.is_user_controlled}
        if controlled:
            stats.controlled_scripts += 1
        stats.message_count += sum(
            1 for m in script.history if m.type == "dialogue" and m.character_id in controlled
        )
    return stats


def check_achievements(
    achievements: Sequence[Achievement],
    stats: Stats,
    now: int | None = None,
) -> list[Achievement]:
    """Unlock every achievement whose threshold is met; return the newly unlocked ones.

    Already unlocked achievements stay unlocked whatever the stats say.
    """
    unlocked_at = now if now is not None else now_ms()
    newly: list[Achievement] = []
    for achievement in achievements:
        if achievement.unlocked:
            continue
        if stats.value(achievement.condition_type) >= achievement.threshold:
            achievement.unlocked = True
            achievement.unlocked_at = unlocked_at
            newly.append(achievement)
            logger.info("Achievement unlocked: %s", achievement.title)
    return newly


def load_achievements(library: Library, user_id: str) -> list[Achievement]:
    """The user's achievements: stored progress over the current default set.

    Defaults added since the state was saved appear locked. Stored entries
    with no default any more are kept.
    """
    stored = {a.id: a for a in library.get_achievements(user_id) or []}
    merged = [stored.pop(a.id, a) for a in default_achievements()]
    return merged + list(stored.values())


def update_achievements(library: Library, user_id: str, now: int | None = None) -> list[Achievement]:
    """Check the user's scripts against their achievements and persist any unlocks.

    Returns the achievements unlocked by this call.
    """
    achievements = load_achievements(library, user_id)
    newly = check_achievements(achievements, collect_stats(library.load_scripts(user_id)), now)
    if newly or library.get_achievements(user_id) is None:
        library.save_achievements(user_id, achievements)
    return newly
