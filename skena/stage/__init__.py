"""The performance: story lifecycle, director mailbox and the turn loop."""

from .director import DirectorMailbox
from .scheduler import TurnScheduler
from .story import (
    StoryPhase,
    StorySession,
    community_templates,
    create_template,
    opening_narration,
    script_from_template,
)

__all__ = [
    "DirectorMailbox",
    "StoryPhase",
    "StorySession",
    "TurnScheduler",
    "community_templates",
    "create_template",
    "opening_narration",
    "script_from_template",
]
