"""One-time import from the legacy flat key-value store.

The legacy store held one JSON-encoded array per collection under a fixed
key. Each key is imported into its partition once and then removed, so a
second run finds nothing to do. Records already present in the durable
store (same id) are kept as they are.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from skena.errors import StoreTransactionFailure
from skena.models import Achievement
from skena.storage.store import PARTITIONS, LocalStore

logger = logging.getLogger(__name__)

# legacy key → partition
LEGACY_KEYS: dict[str, str] = {
    "skena_users": "users",
    "skena_all_scripts": "scripts",
    "skena_global_characters": "characters",
    "skena_chat_sessions": "chats",
    "skena_achievements": "achievements",
}


class LegacyKeyValueStore:
    """String-to-string storage persisted as one JSON object in a file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable legacy store %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        self.path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")

    def keys(self) -> list[str]:
        return list(self._read())

    def get_item(self, key: str) -> str | None:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


def migrate_legacy(
    store: LocalStore,
    legacy: LegacyKeyValueStore,
    owner_id: str | None = None,
) -> dict[str, int]:
    """Import every legacy collection into ``store``; return records imported per partition.

    The legacy achievement list belonged to no user; it is imported as
    ``owner_id``'s board, and left in place when no owner is given.

    A blob that is not a JSON array is logged and dropped. Individual records
    that fail validation are skipped. A store failure leaves the key in place
    so the next start tries again.
    """
    imported: dict[str, int] = {}
    for key, partition in LEGACY_KEYS.items():
        blob = legacy.get_item(key)
        if blob is None:
            continue

        try:
            items = json.loads(blob)
        except ValueError as e:
            logger.warning("Dropping unparseable legacy %s: %s", key, e)
            legacy.remove_item(key)
            continue
        if not isinstance(items, list):
            logger.warning("Dropping legacy %s: expected a list, got %s", key, type(items).__name__)
            legacy.remove_item(key)
            continue
        if partition == "achievements":
            if owner_id is None:
                logger.info("Keeping legacy %s until an owner is known", key)
                continue
            items = [_achievement_board(owner_id, items)]

        model = PARTITIONS[partition]
        count = 0
        try:
            with store.transaction(partition) as tx:
                for raw in items:
                    try:
                        record = model.model_validate(raw)
                    except ValidationError as e:
                        logger.warning("Skipping invalid legacy %s record: %s", partition, e)
                        continue
                    if tx.get(partition, record.id) is not None:
                        continue
                    tx.put(partition, record)
                    count += 1
        except StoreTransactionFailure as e:
            logger.error("Legacy import of %s failed; will retry next start: %s", key, e)
            continue

        legacy.remove_item(key)
        imported[partition] = count
        logger.info("Imported %d legacy %s", count, partition)
    return imported


def _achievement_board(owner_id: str, items: list) -> dict:
    achievements = []
    for raw in items:
        try:
            achievements.append(Achievement.model_validate(raw))
        except ValidationError as e:
            logger.warning("Skipping invalid legacy achievement: %s", e)
    return {"id": owner_id, "user_id": owner_id, "achievements": achievements}
