"""Durable keyed-object store on SQLite.

One table per partition, each row keyed by record id:

    users         User              owner = id
    scripts       Script            owner = owner_id
    characters    GlobalCharacter   owner = owner_id
    chats         ChatSession       owner = user_id
    achievements  AchievementBoard  owner = user_id   (since v2)

Records are stored as pydantic JSON in ``data``; ``owner_id`` is duplicated
into its own column so owner-scoped reads never decode foreign rows.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import BaseModel, ValidationError

from skena.errors import StoreTransactionFailure
from skena.models import AchievementBoard, ChatSession, GlobalCharacter, Script, User

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
DB_NAME = "skena.db"

PARTITIONS: dict[str, type[BaseModel]] = {
    "users": User,
    "scripts": Script,
    "characters": GlobalCharacter,
    "chats": ChatSession,
    "achievements": AchievementBoard,
}

_OWNER_FIELD: dict[str, str] = {
    "users": "id",
    "scripts": "owner_id",
    "characters": "owner_id",
    "chats": "user_id",
    "achievements": "user_id",
}


# tables created by each schema version
_VERSION_TABLES: dict[int, tuple[str, ...]] = {
    1: ("users", "scripts", "characters", "chats"),
    2: ("achievements",),
}


def owner_of(partition: str, record: BaseModel) -> str:
    return getattr(record, _OWNER_FIELD[partition])


def _check_partition(partition: str) -> None:
    if partition not in PARTITIONS:
        raise ValueError(f"Unknown partition {partition!r}")


class Transaction:
    """Reads and writes inside one open SQLite transaction.

    Only the partitions named when the transaction was opened may be touched.
    """

    def __init__(self, connection: sqlite3.Connection, partitions: tuple[str, ...]) -> None:
        self._conn = connection
        self._partitions = partitions

    def _table(self, partition: str) -> str:
        _check_partition(partition)
        if partition not in self._partitions:
            raise ValueError(f"Partition {partition!r} is not part of this transaction")
        return partition

    def _decode(self, partition: str, data: str) -> BaseModel | None:
        try:
            return PARTITIONS[partition].model_validate_json(data)
        except ValidationError as e:
            logger.warning("Skipping undecodable %s record: %s", partition, e)
            return None

    def rows(self, partition: str) -> dict[str, tuple[str, str]]:
        """Raw rows as ``{id: (owner_id, data)}``, in insertion order."""
        table = self._table(partition)
        cursor = self._conn.execute(f"SELECT id, owner_id, data FROM {table} ORDER BY rowid")
        return {row["id"]: (row["owner_id"], row["data"]) for row in cursor}

    def get_all(self, partition: str, owner_id: str | None = None) -> list[BaseModel]:
        table = self._table(partition)
        if owner_id is None:
            cursor = self._conn.execute(f"SELECT data FROM {table} ORDER BY rowid")
        else:
            cursor = self._conn.execute(
                f"SELECT data FROM {table} WHERE owner_id = ? ORDER BY rowid", (owner_id,),
            )
        records = (self._decode(partition, row["data"]) for row in cursor)
        return [r for r in records if r is not None]

    def get(self, partition: str, record_id: str) -> BaseModel | None:
        table = self._table(partition)
        row = self._conn.execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            return None
        return self._decode(partition, row["data"])

    def put(self, partition: str, record: BaseModel) -> None:
        table = self._table(partition)
        self._conn.execute(
            f"""
            INSERT INTO {table} (id, owner_id, data) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET owner_id = excluded.owner_id, data = excluded.data
            """,
            (record.id, owner_of(partition, record), record.model_dump_json()),
        )

    def delete(self, partition: str, record_id: str) -> None:
        table = self._table(partition)
        self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))


class LocalStore:
    """Versioned, transactional store in ``<data_dir>/skena.db``."""

    def __init__(self, data_dir: Path) -> None:
        self._db_path = Path(data_dir) / DB_NAME
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._upgrade()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self._db_path), isolation_level=None)
        connection.row_factory = sqlite3.Row
        return connection

    def _upgrade(self) -> None:
        """Bring an older database up to SCHEMA_VERSION."""
        connection = self._connect()
        try:
            version = connection.execute("PRAGMA user_version").fetchone()[0]
            if version >= SCHEMA_VERSION:
                return
            logger.info("Upgrading store %s from v%d to v%d", self._db_path, version, SCHEMA_VERSION)
            connection.execute("BEGIN IMMEDIATE")
            for step in range(version + 1, SCHEMA_VERSION + 1):
                for table in _VERSION_TABLES[step]:
                    connection.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {table} (
                            id TEXT PRIMARY KEY,
                            owner_id TEXT NOT NULL,
                            data TEXT NOT NULL
                        )
                        """
                    )
                    connection.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}(owner_id)"
                    )
            connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            connection.execute("COMMIT")
        except sqlite3.Error as e:
            if connection.in_transaction:
                connection.execute("ROLLBACK")
            raise StoreTransactionFailure(f"Cannot open store at {self._db_path}: {e}") from e
        finally:
            connection.close()

    @contextmanager
    def transaction(self, *partitions: str) -> Iterator[Transaction]:
        """Open one ACID transaction over ``partitions``.

        Commits when the block exits normally and rolls back on any exception.
        SQLite failures surface as StoreTransactionFailure; other exceptions
        propagate unchanged after the rollback.
        """
        for partition in partitions:
            _check_partition(partition)
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(connection, partitions)
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")
        except sqlite3.Error as e:
            if connection.in_transaction:
                connection.execute("ROLLBACK")
            raise StoreTransactionFailure(f"Store transaction on {', '.join(partitions)} failed: {e}") from e
        finally:
            connection.close()

    # ── one-shot helpers ──────────────────────────────────

    def get_all(self, partition: str, owner_id: str | None = None) -> list[BaseModel]:
        with self.transaction(partition) as tx:
            return tx.get_all(partition, owner_id)

    def get(self, partition: str, record_id: str) -> BaseModel | None:
        with self.transaction(partition) as tx:
            return tx.get(partition, record_id)

    def put(self, partition: str, record: BaseModel) -> None:
        with self.transaction(partition) as tx:
            tx.put(partition, record)

    def delete(self, partition: str, record_id: str) -> None:
        with self.transaction(partition) as tx:
            tx.delete(partition, record_id)
