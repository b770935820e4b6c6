"""Application settings.

Values come from the process environment, optionally seeded from a ``.env``
file. Every field has a default so an empty environment still yields a usable
(if credential-less) configuration.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from skena.models import Language


class ProviderKind(str, Enum):
    """Which generation backend serves text intents."""

    STRUCTURED = "structured"  # schema-declared JSON output (Gemini API)
    PLAIN = "plain"            # chat completions, JSON requested in-band (OpenRouter)


class Settings(BaseModel):
    provider: ProviderKind = ProviderKind.STRUCTURED

    structured_api_key: str = ""
    structured_base_url: str = "https://generativelanguage.googleapis.com"
    text_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image"
    video_model: str = "veo-3.0-fast-generate-001"

    plain_api_key: str = ""
    plain_base_url: str = "https://openrouter.ai/api/v1"
    plain_model: str = "google/gemini-2.0-flash-001"

    language: Language = "en-US"
    data_dir: Path = Path("data")

    retries: int = 1
    retry_base_delay: float = 1.0
    text_timeout: float = 45.0
    chat_timeout: float = 60.0
    image_timeout: float = 60.0
    video_poll_interval: float = 5.0
    video_poll_attempts: int = 60

    pacing_interval: float = 1.5
    illustrate_narration: bool = False
    turn_retries: int = 0


# env var → Settings field
_ENV_FIELDS: dict[str, str] = {
    "SKENA_PROVIDER": "provider",
    "GEMINI_API_KEY": "structured_api_key",
    "GEMINI_BASE_URL": "structured_base_url",
    "SKENA_TEXT_MODEL": "text_model",
    "SKENA_IMAGE_MODEL": "image_model",
    "SKENA_VIDEO_MODEL": "video_model",
    "OPENROUTER_API_KEY": "plain_api_key",
    "OPENROUTER_BASE_URL": "plain_base_url",
    "OPENROUTER_MODEL": "plain_model",
    "SKENA_LANGUAGE": "language",
    "SKENA_DATA_DIR": "data_dir",
    "SKENA_RETRIES": "retries",
    "SKENA_RETRY_BASE_DELAY": "retry_base_delay",
    "SKENA_TEXT_TIMEOUT": "text_timeout",
    "SKENA_CHAT_TIMEOUT": "chat_timeout",
    "SKENA_IMAGE_TIMEOUT": "image_timeout",
    "SKENA_VIDEO_POLL_INTERVAL": "video_poll_interval",
    "SKENA_VIDEO_POLL_ATTEMPTS": "video_poll_attempts",
    "SKENA_PACING": "pacing_interval",
    "SKENA_ILLUSTRATE": "illustrate_narration",
    "SKENA_TURN_RETRIES": "turn_retries",
}


def load_settings(env_file: Path | None = None, **overrides) -> Settings:
    """Build Settings from ``env_file`` (if given), the environment, then overrides.

    Existing environment variables win over the file, as with ``load_dotenv``.
    Pydantic coerces the raw strings ("1.5", "true", "plain") to field types.
    """
    if env_file is not None:
        load_dotenv(env_file)
    fields: dict = {}
    for var, field in _ENV_FIELDS.items():
        value = os.getenv(var)
        if value not in (None, ""):
            fields[field] = value
    fields.update(overrides)
    return Settings.model_validate(fields)
