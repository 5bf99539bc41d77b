"""SQL snapshot store for the knowledge base.

Writes the latest entry per ``(category, key)`` to a ``knowledge_entries``
table and loads them back on startup. Works with any SQLAlchemy URL
(PostgreSQL in production, SQLite in tests).
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any

from sqlalchemy import create_engine, text

from perseus.knowledge.base import KnowledgeBase, KnowledgeEntry

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return str(value)


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS knowledge_entries (
    category VARCHAR(128) NOT NULL,
    key VARCHAR(256) NOT NULL,
    data TEXT NOT NULL,
    metadata TEXT NOT NULL,
    timestamp BIGINT NOT NULL,
    PRIMARY KEY (category, key)
)
"""

_UPSERT = """
INSERT INTO knowledge_entries (category, key, data, metadata, timestamp)
VALUES (:category, :key, :data, :metadata, :timestamp)
ON CONFLICT (category, key) DO UPDATE SET
    data = excluded.data,
    metadata = excluded.metadata,
    timestamp = excluded.timestamp
"""


_DELETE = "DELETE FROM knowledge_entries WHERE category = :category AND key = :key"


class SqlKnowledgeStore:
    """Persist knowledge base snapshots through SQLAlchemy."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Any | None = None

    def _get_engine(self) -> Any:
        if self._engine is None:
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(self._database_url, echo=False, pool_pre_ping=True)
            with self._engine.begin() as conn:
                conn.execute(text(_CREATE_TABLE))
        return self._engine

    def save(self, kb: KnowledgeBase) -> int:
        """Write every latest entry and drop rows for deleted or pruned keys.

        Returns the number of rows written. Dataclasses are stored as dicts;
        other non-JSON values via ``str()``.
        """
        removed = [{"category": category, "key": key} for category, key in kb.take_removed()]
        rows = []
        for category, entries in kb.snapshot().items():
            for key, entry in entries.items():
                rows.append(
                    {
                        "category": category,
                        "key": key,
                        "data": json.dumps(entry.data, default=_encode),
                        "metadata": json.dumps(entry.metadata, default=_encode),
                        "timestamp": entry.timestamp,
                    }
                )
        if not rows and not removed:
            return 0

        with self._get_engine().begin() as conn:
            if removed:
                conn.execute(text(_DELETE), removed)
            if rows:
                conn.execute(text(_UPSERT), rows)
        logger.info("Persisted %d knowledge entries", len(rows))
        return len(rows)

    def load(self, kb: KnowledgeBase) -> int:
        with self._get_engine().begin() as conn:
            result = conn.execute(
                text("SELECT category, key, data, metadata, timestamp FROM knowledge_entries")
            )
            rows = result.fetchall()

        for category, key, data, metadata, timestamp in rows:
            kb.load_entry(
                category,
                key,
                KnowledgeEntry(data=json.loads(data), metadata=json.loads(metadata), timestamp=int(timestamp)),
            )
        logger.info("Loaded %d knowledge entries", len(rows))
        return len(rows)
