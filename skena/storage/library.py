"""Owner-scoped access to scripts, global characters, chat sessions and achievements.

    Library(store)                     load/save whole collections per owner
    Collection                         an owner's in-memory list, saved by reconciliation
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Generic, TypeVar

from pydantic import BaseModel

from skena.models import Achievement, AchievementBoard, ChatSession, GlobalCharacter, Script, User
from skena.storage.reconcile import ReconcileResult, reconcile
from skena.storage.store import LocalStore

R = TypeVar("R", bound=BaseModel)


class Library:
    def __init__(self, store: LocalStore) -> None:
        self.store = store

    # ── scripts ───────────────────────────────────────────

    def load_scripts(self, owner_id: str) -> list[Script]:
        """Owner's scripts, most recently updated first."""
        scripts = self.store.get_all("scripts", owner_id)
        return sorted(scripts, key=lambda s: s.last_updated, reverse=True)

    def save_scripts(self, owner_id: str, scripts: Sequence[Script]) -> ReconcileResult:
        return reconcile(self.store, "scripts", owner_id, scripts)

    def scripts(self, owner_id: str) -> Collection[Script]:
        return Collection(self, "scripts", owner_id, self.load_scripts(owner_id))

    # ── global characters ─────────────────────────────────

    def load_characters(self, owner_id: str) -> list[GlobalCharacter]:
        return self.store.get_all("characters", owner_id)

    def save_characters(self, owner_id: str, characters: Sequence[GlobalCharacter]) -> ReconcileResult:
        return reconcile(self.store, "characters", owner_id, characters)

    def characters(self, owner_id: str) -> Collection[GlobalCharacter]:
        return Collection(self, "characters", owner_id, self.load_characters(owner_id))

    # ── chats ─────────────────────────────────────────────

    def get_chat_session(self, user_id: str, character_id: str) -> ChatSession | None:
        for session in self.store.get_all("chats", user_id):
            if session.character_id == character_id:
                return session
        return None

    def save_chat_session(self, session: ChatSession) -> None:
        self.store.put("chats", session)

    # ── users ─────────────────────────────────────────────

    def get_user(self, user_id: str) -> User | None:
        return self.store.get("users", user_id)

    def save_user(self, user: User) -> None:
        self.store.put("users", user)

    # ── achievements ──────────────────────────────────────

    def get_achievements(self, user_id: str) -> list[Achievement] | None:
        """The user's stored achievement state, or None if nothing was saved yet."""
        board = self.store.get("achievements", user_id)
        return board.achievements if board is not None else None

    def save_achievements(self, user_id: str, achievements: Sequence[Achievement]) -> None:
        self.store.put(
            "achievements",
            AchievementBoard(id=user_id, user_id=user_id, achievements=list(achievements)),
        )


class Collection(Generic[R]):
    """One owner's records of one partition, held in memory.

    The list is authoritative: ``save`` converges the store to it, which is
    how a removal here becomes a delete on disk.
    """

    def __init__(self, library: Library, partition: str, owner_id: str, items: list[R]) -> None:
        self.library = library
        self.partition = partition
        self.owner_id = owner_id
        self.items = items

    def __iter__(self) -> Iterator[R]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, record_id: object) -> bool:
        return any(item.id == record_id for item in self.items)

    def get(self, record_id: str) -> R | None:
        for item in self.items:
            if item.id == record_id:
                return item
        return None

    def upsert(self, record: R) -> None:
        """Replace the record with the same id, or add it at the front."""
        for i, item in enumerate(self.items):
            if item.id == record.id:
                self.items[i] = record
                return
        self.items.insert(0, record)

    def remove(self, record_id: str) -> bool:
        before = len(self.items)
        self.items = [item for item in self.items if item.id != record_id]
        return len(self.items) != before

    def save(self) -> ReconcileResult:
        return reconcile(self.library.store, self.partition, self.owner_id, self.items)
