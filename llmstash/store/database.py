"""
llmstash Store - Metadata Store

SQLite-backed metadata: settings, raw registry documents, model families
(model_info) and pulled models (model).

Schema changes are an ordered list of migrations gated by
``PRAGMA user_version``. Pending migrations run together inside a single
``BEGIN EXCLUSIVE`` transaction, so a failed upgrade leaves the database
exactly as it was.

Mutations of ``model_info`` are reported to registered observers on the
same connection and inside the same transaction (the search index is
one), so derived tables can never drift from their source rows.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple, Union, runtime_checkable

from .config_entries import (
    FILE_EXT_KEYS,
    MEDIA_TYPE_KEYS,
    ConfigKey,
    SettingType,
    decode_value,
    encode_value,
)
from .errors import ConflictError, NotFoundError, StorageError
from .models import LayerKind, ModelInfoRecord, ModelRecord, ProgressStatus, RawManifestEntry

logger = logging.getLogger(__name__)

_NOW = "CAST(strftime('%s', 'now') AS INTEGER)"


# =============================================================================
# Observers
# =============================================================================

@runtime_checkable
class ModelInfoObserver(Protocol):
    """Receives every model_info mutation inside the writing transaction."""

    def on_insert(self, conn: sqlite3.Connection, new: ModelInfoRecord) -> None:
        ...

    def on_update(
        self, conn: sqlite3.Connection, old: ModelInfoRecord, new: ModelInfoRecord
    ) -> None:
        ...

    def on_delete(self, conn: sqlite3.Connection, old: ModelInfoRecord) -> None:
        ...


# =============================================================================
# Migrations
# =============================================================================

@dataclass
class Migration:
    """One forward-only schema step."""
    version: int
    description: str
    apply: Callable[[sqlite3.Connection], None]


_V1_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS config (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        value BLOB,
        created_at INTEGER NOT NULL DEFAULT ({_NOW}),
        updated_at INTEGER NOT NULL DEFAULT ({_NOW})
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS library_raw_data (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        href TEXT NOT NULL UNIQUE,
        digest TEXT NOT NULL,
        raw_data TEXT NOT NULL,
        created_at INTEGER NOT NULL DEFAULT ({_NOW}),
        updated_at INTEGER NOT NULL DEFAULT ({_NOW})
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS model_info (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        href TEXT NOT NULL,
        raw_digest TEXT NOT NULL DEFAULT '',
        introduction TEXT NOT NULL DEFAULT '',
        pull_count TEXT NOT NULL DEFAULT '',
        tag_count TEXT NOT NULL DEFAULT '',
        summary TEXT NOT NULL DEFAULT '',
        readme TEXT NOT NULL DEFAULT '',
        updated_time TEXT NOT NULL DEFAULT '',
        created_at INTEGER NOT NULL DEFAULT ({_NOW}),
        updated_at INTEGER NOT NULL DEFAULT ({_NOW}),
        UNIQUE (title, href)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS model (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        href TEXT NOT NULL,
        path TEXT,
        template TEXT,
        license TEXT,
        params TEXT,
        size INTEGER,
        context TEXT,
        input TEXT,
        hash TEXT,
        model_id TEXT REFERENCES model_info (id) ON DELETE SET NULL,
        created_at INTEGER NOT NULL DEFAULT ({_NOW}),
        updated_at INTEGER NOT NULL DEFAULT ({_NOW})
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_model_model_id ON model (model_id)",
    "CREATE INDEX IF NOT EXISTS idx_model_info_title ON model_info (title)",
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS model_info_fts USING fts5 (
        title, introduction, summary, readme,
        content='model_info'
    )
    """,
]

_V2_STATEMENTS = [
    "DROP TABLE IF EXISTS model_info_fts",
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS model_info_search USING fts5 (
        model_info_id UNINDEXED,
        title, introduction, summary, readme,
        tokenize='porter unicode61 remove_diacritics 2'
    )
    """,
    "DELETE FROM model_info_search",
    """
    INSERT INTO model_info_search (model_info_id, title, introduction, summary, readme)
    SELECT id, title, introduction, summary, readme FROM model_info
    """,
]


def seed_config(conn: sqlite3.Connection) -> None:
    """
    Insert the well-known config rows.

    Progress markers are only created when missing so re-seeding never
    moves them backwards. Static defaults are upserted.
    """
    for key in ConfigKey:
        value = encode_value(key.setting_type, key.default)
        if key.is_status:
            conn.execute(
                "INSERT INTO config (name, value) VALUES (?, ?) "
                "ON CONFLICT (name) DO NOTHING",
                (key.key, value),
            )
        else:
            conn.execute(
                "INSERT INTO config (name, value) VALUES (?, ?) "
                f"ON CONFLICT (name) DO UPDATE SET value = excluded.value, updated_at = {_NOW}",
                (key.key, value),
            )


def _migrate_v1(conn: sqlite3.Connection) -> None:
    for statement in _V1_STATEMENTS:
        conn.execute(statement)
    seed_config(conn)


def _migrate_v2(conn: sqlite3.Connection) -> None:
    for statement in _V2_STATEMENTS:
        conn.execute(statement)


MIGRATIONS: List[Migration] = [
    Migration(1, "base tables, config seeds, external-content search index", _migrate_v1),
    Migration(2, "self-owned search index with porter tokenizer", _migrate_v2),
]

SCHEMA_VERSION = MIGRATIONS[-1].version


# =============================================================================
# Metadata Store
# =============================================================================

class MetadataStore:
    """
    Transactional access to the metadata database.

    One connection is shared by the store; all writes are expected to come
    from the thread driving the store (blob workers never touch it).
    """

    def __init__(self, db_path: Path, migrations: Optional[List[Migration]] = None):
        self.db_path = Path(db_path)
        self.migrations = migrations if migrations is not None else MIGRATIONS
        self._conn: Optional[sqlite3.Connection] = None
        self._observers: List[ModelInfoObserver] = []
        self._depth = 0
        self._lock = threading.RLock()

    # =========================================================================
    # Connection & Transactions
    # =========================================================================

    def connect(self) -> sqlite3.Connection:
        """Open (once) and return the shared connection."""
        if self._conn is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=30.0,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
            except (OSError, sqlite3.Error) as e:
                raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
            self._conn = conn
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def add_observer(self, observer: ModelInfoObserver) -> None:
        """Register an observer for model_info mutations."""
        self._observers.append(observer)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e).upper():
                raise ConflictError(str(e)) from e
            raise StorageError(f"Database constraint failed: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"Database error: {e}") from e

    @contextmanager
    def transaction(self, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        Nested calls join the outermost transaction. Any exception rolls the
        whole outermost transaction back; sqlite errors surface as
        StorageError / ConflictError.
        """
        with self._lock:
            conn = self.connect()
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            with self._translate_errors():
                conn.execute(f"BEGIN {mode}")
                self._depth = 1
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        try:
                            conn.execute("ROLLBACK")
                        except sqlite3.Error as rollback_error:
                            logger.error(f"[MetadataStore] Rollback failed: {rollback_error}")
                    raise
                else:
                    conn.execute("COMMIT")
                finally:
                    self._depth = 0

    def _query(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._lock, self._translate_errors():
            return self.connect().execute(sql, params).fetchall()

    # =========================================================================
    # Schema
    # =========================================================================

    @property
    def user_version(self) -> int:
        return self._query("PRAGMA user_version")[0][0]

    def initialize(self) -> int:
        """
        Bring the schema up to date.

        Returns:
            The schema version after migrating.
        """
        with self._lock:
            conn = self.connect()
            if self.user_version == 0:
                # Only effective before the first table exists.
                with self._translate_errors():
                    conn.execute("PRAGMA auto_vacuum = INCREMENTAL")

            with self.transaction("EXCLUSIVE"):
                # Read under the exclusive lock: another process may have migrated.
                current = self.user_version
                pending = [m for m in self.migrations if m.version > current]
                if not pending:
                    logger.debug(f"[MetadataStore] Schema up to date (v{current})")
                    return current

                for migration in pending:
                    logger.info(
                        f"[MetadataStore] Migrating to v{migration.version}: {migration.description}"
                    )
                    migration.apply(conn)
                    conn.execute(f"PRAGMA user_version = {int(migration.version)}")

            return pending[-1].version

    def table_names(self) -> List[str]:
        rows = self._query("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")
        return [row["name"] for row in rows]

    # =========================================================================
    # Settings & Progress Markers
    # =========================================================================

    def get_value(self, name: str, setting_type: SettingType) -> Any:
        rows = self._query("SELECT value FROM config WHERE name = ?", (name,))
        if not rows:
            return None
        return decode_value(setting_type, rows[0]["value"])

    def set_value(self, name: str, setting_type: SettingType, value: Any) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO config (name, value) VALUES (?, ?) "
                f"ON CONFLICT (name) DO UPDATE SET value = excluded.value, updated_at = {_NOW}",
                (name, encode_value(setting_type, value)),
            )

    def delete_value(self, name: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM config WHERE name = ?", (name,))

    def get_setting(self, key: ConfigKey) -> Any:
        """Typed read of a well-known entry (its seed value when unset)."""
        value = self.get_value(key.key, key.setting_type)
        return key.default if value is None else value

    def set_setting(self, key: ConfigKey, value: Any) -> None:
        if key.is_status:
            self.advance_status(key, value)
            return
        self.set_value(key.key, key.setting_type, value)

    def get_status(self, key: Union[ConfigKey, str]) -> Optional[ProgressStatus]:
        """Current value of a progress marker, or None if it was never set."""
        name = key.key if isinstance(key, ConfigKey) else key
        return self.get_value(name, SettingType.STATUS)

    def advance_status(self, key: Union[ConfigKey, str], status: ProgressStatus) -> bool:
        """
        Move a progress marker forward.

        Returns:
            False (and leaves the marker alone) if ``status`` is behind the
            current value; True otherwise.
        """
        name = key.key if isinstance(key, ConfigKey) else key
        status = ProgressStatus(status)
        with self.transaction():
            current = self.get_status(name)
            if current is not None and status.rank < current.rank:
                logger.warning(
                    f"[MetadataStore] Refusing to move '{name}' back "
                    f"from '{current.value}' to '{status.value}'"
                )
                return False
            self.set_value(name, SettingType.STATUS, status)
        return True

    def media_types(self) -> Dict[str, LayerKind]:
        """Seeded layer media types mapped to their blob class."""
        return {self.get_setting(key): kind for kind, key in MEDIA_TYPE_KEYS.items()}

    def file_extension(self, kind: LayerKind) -> str:
        return self.get_setting(FILE_EXT_KEYS[LayerKind(kind)])

    # =========================================================================
    # Raw Document Cache
    # =========================================================================

    def get_raw(self, href: str) -> Optional[RawManifestEntry]:
        rows = self._query(
            "SELECT href, digest, raw_data, updated_at FROM library_raw_data WHERE href = ?",
            (href,),
        )
        return RawManifestEntry(**dict(rows[0])) if rows else None

    def put_raw(self, href: str, digest: str, raw_data: str) -> None:
        """Insert or replace the cached document for ``href``."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO library_raw_data (href, digest, raw_data) VALUES (?, ?, ?) "
                "ON CONFLICT (href) DO UPDATE SET digest = excluded.digest, "
                f"raw_data = excluded.raw_data, updated_at = {_NOW}",
                (href, digest, raw_data),
            )

    # =========================================================================
    # Model Info
    # =========================================================================

    _MODEL_INFO_FIELDS = (
        "title", "href", "raw_digest", "introduction", "pull_count",
        "tag_count", "summary", "readme", "updated_time",
    )

    def get_model_info(self, model_info_id: str) -> Optional[ModelInfoRecord]:
        rows = self._query("SELECT * FROM model_info WHERE id = ?", (model_info_id,))
        return ModelInfoRecord(**dict(rows[0])) if rows else None

    def find_model_info(self, title: str, href: Optional[str] = None) -> Optional[ModelInfoRecord]:
        """Look up a family by title (and href when given)."""
        if href is None:
            rows = self._query(
                "SELECT * FROM model_info WHERE title = ? ORDER BY created_at LIMIT 1", (title,)
            )
        else:
            rows = self._query(
                "SELECT * FROM model_info WHERE title = ? AND href = ?", (title, href)
            )
        return ModelInfoRecord(**dict(rows[0])) if rows else None

    def list_model_info(self, ids: Optional[List[str]] = None) -> List[ModelInfoRecord]:
        """All families, or the given ids in the given order."""
        if ids is None:
            rows = self._query("SELECT * FROM model_info ORDER BY title")
            return [ModelInfoRecord(**dict(row)) for row in rows]
        records = []
        for model_info_id in ids:
            record = self.get_model_info(model_info_id)
            if record is not None:
                records.append(record)
        return records

    def count_model_info(self) -> int:
        return self._query("SELECT COUNT(*) FROM model_info")[0][0]

    def insert_model_info(self, record: ModelInfoRecord) -> ModelInfoRecord:
        """Insert a new family; duplicates of (title, href) raise ConflictError."""
        new = record.model_copy(update={"id": record.id or uuid.uuid4().hex})
        columns = ("id",) + self._MODEL_INFO_FIELDS
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO model_info ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                tuple(getattr(new, c) for c in columns),
            )
            for observer in self._observers:
                observer.on_insert(conn, new)
        return new

    def update_model_info(self, record: ModelInfoRecord) -> ModelInfoRecord:
        """Replace the stored fields of an existing family (matched by id)."""
        if not record.id:
            raise NotFoundError("Cannot update model info without an id")
        assignments = ", ".join(f"{c} = ?" for c in self._MODEL_INFO_FIELDS)
        with self.transaction() as conn:
            old = self.get_model_info(record.id)
            if old is None:
                raise NotFoundError(f"Model info not found: {record.id}")
            conn.execute(
                f"UPDATE model_info SET {assignments}, updated_at = {_NOW} WHERE id = ?",
                tuple(getattr(record, c) for c in self._MODEL_INFO_FIELDS) + (record.id,),
            )
            for observer in self._observers:
                observer.on_update(conn, old, record)
        return record

    def upsert_model_info(self, record: ModelInfoRecord) -> Tuple[ModelInfoRecord, bool]:
        """
        Insert or update a family keyed by (title, href).

        Returns:
            (stored record, changed). ``changed`` is False when the stored
            raw digest already equals the incoming one.
        """
        with self.transaction():
            existing = self.find_model_info(record.title, record.href)
            if existing is None:
                return self.insert_model_info(record), True
            if record.raw_digest and existing.raw_digest == record.raw_digest:
                return existing, False
            return self.update_model_info(record.model_copy(update={"id": existing.id})), True

    def delete_model_info(self, model_info_id: str) -> bool:
        with self.transaction() as conn:
            old = self.get_model_info(model_info_id)
            if old is None:
                return False
            conn.execute("DELETE FROM model_info WHERE id = ?", (model_info_id,))
            for observer in self._observers:
                observer.on_delete(conn, old)
        return True

    # =========================================================================
    # Models
    # =========================================================================

    _MODEL_FIELDS = (
        "name", "href", "path", "template", "license", "params",
        "size", "context", "input", "hash", "model_id",
    )

    def get_model(self, name: str) -> Optional[ModelRecord]:
        rows = self._query("SELECT * FROM model WHERE name = ?", (name,))
        return ModelRecord(**dict(rows[0])) if rows else None

    def list_models(self) -> List[ModelRecord]:
        rows = self._query("SELECT * FROM model ORDER BY name")
        return [ModelRecord(**dict(row)) for row in rows]

    def upsert_model(self, record: ModelRecord, overwrite: bool = False) -> ModelRecord:
        """
        Store a pulled model.

        An existing row with the same name is updated in place (id kept)
        only when ``overwrite`` is set; otherwise ConflictError is raised.
        """
        with self.transaction() as conn:
            existing = self.get_model(record.name)
            if existing is not None:
                if not overwrite:
                    raise ConflictError(f"Model already exists: {record.name}")
                stored = record.model_copy(update={"id": existing.id})
                assignments = ", ".join(f"{c} = ?" for c in self._MODEL_FIELDS)
                conn.execute(
                    f"UPDATE model SET {assignments}, updated_at = {_NOW} WHERE id = ?",
                    tuple(getattr(stored, c) for c in self._MODEL_FIELDS) + (stored.id,),
                )
                return stored

            stored = record.model_copy(update={"id": record.id or uuid.uuid4().hex})
            columns = ("id",) + self._MODEL_FIELDS
            conn.execute(
                f"INSERT INTO model ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                tuple(getattr(stored, c) for c in columns),
            )
            return stored

    def delete_model(self, name: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM model WHERE name = ?", (name,))
            return cursor.rowcount > 0
