"""Test doubles shared by the generation, stage and companion tests."""

from __future__ import annotations

import json

from skena.config import ProviderKind, Settings
from skena.generation import GenerationClient
from skena.llm import ProviderReply, ProviderRequest, VideoStatus

PNG = "data:image/png;base64,AAAA"


class StubProvider:
    """Provider double that replays canned replies in order.

    A reply may be a dict (sent as JSON text), a str, a ProviderReply or an
    exception instance to raise. When the queue runs dry an empty reply is
    returned.
    """

    def __init__(self, *replies, kind: ProviderKind = ProviderKind.STRUCTURED,
                 images=(), video_statuses=()) -> None:
        self.kind = kind
        self.replies = list(replies)
        self.requests: list[ProviderRequest] = []
        self.images = list(images)
        self.image_prompts: list[str] = []
        self.video_statuses = list(video_statuses)
        self.video_prompts: list[str] = []
        self.polls = 0

    @staticmethod
    def _next(queue: list, default):
        item = queue.pop(0) if queue else default
        if isinstance(item, BaseException):
            raise item
        return item

    async def complete(self, request: ProviderRequest) -> ProviderReply:
        self.requests.append(request)
        item = self._next(self.replies, ProviderReply())
        if isinstance(item, dict):
            return ProviderReply(text=json.dumps(item))
        if isinstance(item, str):
            return ProviderReply(text=item)
        return item

    async def generate_image(self, prompt: str) -> str:
        self.image_prompts.append(prompt)
        return self._next(self.images, PNG)

    async def start_video(self, prompt: str) -> str:
        self.video_prompts.append(prompt)
        return "models/veo/operations/op-1"

    async def poll_video(self, operation: str) -> VideoStatus:
        self.polls += 1
        return self._next(self.video_statuses, VideoStatus(done=False))


class RecordingSleep:
    """Stands in for asyncio.sleep; records every requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_client(structured: StubProvider | None = None, plain: StubProvider | None = None,
                sleep: RecordingSleep | None = None, **settings) -> GenerationClient:
    settings.setdefault("structured_api_key", "test-key")
    settings.setdefault("plain_api_key", "test-key")
    return GenerationClient(
        Settings(**settings),
        structured=structured or StubProvider(),
        plain=plain or StubProvider(kind=ProviderKind.PLAIN),
        sleep=sleep or RecordingSleep(),
    )
