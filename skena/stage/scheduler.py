"""Turn scheduler: the performance loop.

Every pacing interval, while the session is playing, one tick produces one
beat:

    take director command → resolve goal → generate beat → (illustrate) → append + persist

A tick that finds another tick of the same script still in flight is
skipped, not queued. A failed tick pauses the session and reports the error;
the loop never sits silently halted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from skena.errors import SkenaError
from skena.generation import Beat
from skena.models import Message
from skena.resilience import Sleep
from skena.stage.director import DirectorMailbox
from skena.stage.story import StorySession

logger = logging.getLogger(__name__)

# Script ids with a beat generation in flight, across all schedulers.
_IN_FLIGHT: set[str] = set()


class TurnScheduler:
    """Paces beat generation for one StorySession.

    Args:
        session:      The story being performed.
        pacing:       Seconds between ticks. Defaults to settings.pacing_interval.
        on_error:     Called with the error when a tick halts play.
        turn_retries: Extra attempts for a failed turn before halting.
                      Defaults to settings.turn_retries (0: halt at once).
        sleep:        Coroutine used for pacing waits.
    """

    def __init__(
        self,
        session: StorySession,
        *,
        pacing: float | None = None,
        on_error: Callable[[SkenaError], None] | None = None,
        turn_retries: int | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        settings = session.client.settings
        self.session = session
        self.pacing = settings.pacing_interval if pacing is None else pacing
        self.turn_retries = settings.turn_retries if turn_retries is None else turn_retries
        self.on_error = on_error
        self.mailbox = DirectorMailbox()
        self.turn_processing = False
        self.last_error: SkenaError | None = None
        self._sleep = sleep

    @property
    def pending_command(self) -> str | None:
        return self.mailbox.peek()

    def _eligible(self) -> bool:
        script = self.session.script
        if script is None or not self.session.is_playing:
            return False
        return not self.turn_processing and script.id not in _IN_FLIGHT

    async def tick(self) -> Message | None:
        """Run one turn if eligible; return the appended beat or None."""
        if not self._eligible():
            return None
        script = self.session.script
        # claim the slot before the first await
        self.turn_processing = True
        _IN_FLIGHT.add(script.id)
        try:
            command = self.mailbox.take()
            goal = self.session.resolve_goal(command)
            beat = await self._generate(command, goal)
            image_url = await self._illustrate(beat)
            message = self.session.append_beat(beat, image_url)
            logger.debug(
                "beat %s [%s] by %s (goal=%r)",
                message.id, message.type, message.character_id, goal,
            )
            return message
        except SkenaError as e:
            self._halt(e)
            return None
        finally:
            self.turn_processing = False
            _IN_FLIGHT.discard(script.id)

    async def _generate(self, command: str | None, goal: str) -> Beat:
        attempt = 0
        while True:
            try:
                return await self.session.client.generate_next_beat(
                    self.session.script, command=command, goal=goal, lang=self.session.language,
                )
            except SkenaError as e:
                if attempt >= self.turn_retries:
                    raise
                attempt += 1
                logger.warning("Turn failed (%s); retrying turn %d/%d", e, attempt, self.turn_retries)

    async def _illustrate(self, beat: Beat) -> str | None:
        session = self.session
        if beat.type != "narration" or not session.client.settings.illustrate_narration:
            return None
        try:
            return await session.client.generate_scene_image(beat.content, session.script.title)
        except SkenaError as e:
            logger.warning("Scene illustration failed, appending without image: %s", e)
            return None

    def _halt(self, error: SkenaError) -> None:
        self.session.pause()
        self.last_error = error
        logger.error("Performance halted: %s", error)
        if self.on_error is not None:
            self.on_error(error)

    async def run(self) -> None:
        """Tick every pacing interval until play stops."""
        while self.session.is_playing:
            await self._sleep(self.pacing)
            await self.tick()

    async def direct(self, command: str, rewrite_plot: bool = False) -> None:
        """Issue a director command for the next beat.

        With ``rewrite_plot`` the outline from the current plot point on is
        regenerated around the command first. A paused session resumes.
        """
        self.mailbox.post(command)
        if rewrite_plot and command.strip():
            await self.session.rewrite_future_plot(command.strip())
        if self.session.registered and not self.session.is_playing:
            self.last_error = None
            self.session.play()
