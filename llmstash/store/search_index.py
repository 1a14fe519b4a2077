"""
llmstash Store - Search Index

Keeps the ``model_info_search`` FTS5 table in step with ``model_info``.
The index is a plain observer of the MetadataStore: every hook runs on the
writer's connection, inside the writer's transaction.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import List

from .models import ModelInfoRecord

logger = logging.getLogger(__name__)

SEARCH_TABLE = "model_info_search"

_TOKEN = re.compile(r"\w+", re.UNICODE)


def build_match_query(query: str) -> str:
    """
    Turn free text into an FTS5 MATCH expression.

    Every word becomes a quoted prefix term (``"llam"*``), so partial words
    match and FTS operators typed by the user are treated as text.
    """
    tokens = _TOKEN.findall(query)
    return " ".join(f'"{token}"*' for token in tokens)


class SearchIndex:
    """FTS5 shadow index of model_info."""

    def __init__(self, metadata):
        self.metadata = metadata

    # =========================================================================
    # Observer Hooks
    # =========================================================================

    def on_insert(self, conn: sqlite3.Connection, new: ModelInfoRecord) -> None:
        conn.execute(
            f"INSERT INTO {SEARCH_TABLE} (model_info_id, title, introduction, summary, readme) "
            "VALUES (?, ?, ?, ?, ?)",
            (new.id, new.title, new.introduction, new.summary, new.readme),
        )

    def on_update(
        self, conn: sqlite3.Connection, old: ModelInfoRecord, new: ModelInfoRecord
    ) -> None:
        self.on_delete(conn, old)
        self.on_insert(conn, new)

    def on_delete(self, conn: sqlite3.Connection, old: ModelInfoRecord) -> None:
        conn.execute(f"DELETE FROM {SEARCH_TABLE} WHERE model_info_id = ?", (old.id,))

    # =========================================================================
    # Maintenance
    # =========================================================================

    def rebuild(self) -> int:
        """
        Drop, recreate and repopulate the index from model_info.

        Returns:
            Number of indexed rows.
        """
        with self.metadata.transaction() as conn:
            conn.execute(f"DROP TABLE IF EXISTS {SEARCH_TABLE}")
            conn.execute(
                f"CREATE VIRTUAL TABLE {SEARCH_TABLE} USING fts5 ("
                "model_info_id UNINDEXED, title, introduction, summary, readme, "
                "tokenize='porter unicode61 remove_diacritics 2')"
            )
            conn.execute(
                f"INSERT INTO {SEARCH_TABLE} (model_info_id, title, introduction, summary, readme) "
                "SELECT id, title, introduction, summary, readme FROM model_info"
            )
            count = conn.execute(f"SELECT COUNT(*) FROM {SEARCH_TABLE}").fetchone()[0]
        logger.info(f"[SearchIndex] Rebuilt index with {count} row(s)")
        return count

    def count(self) -> int:
        with self.metadata.transaction("DEFERRED") as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {SEARCH_TABLE}").fetchone()[0]

    # =========================================================================
    # Query
    # =========================================================================

    def search(self, query: str, limit: int = 20) -> List[str]:
        """
        Full-text search over title, introduction, summary and readme.

        Returns:
            ModelInfo ids, best match first. An empty query matches nothing.
        """
        match = build_match_query(query)
        if not match:
            return []
        with self.metadata.transaction("DEFERRED") as conn:
            rows = conn.execute(
                f"SELECT model_info_id FROM {SEARCH_TABLE} "
                f"WHERE {SEARCH_TABLE} MATCH ? ORDER BY bm25({SEARCH_TABLE}) LIMIT ?",
                (match, int(limit)),
            ).fetchall()
        return [row[0] for row in rows]
