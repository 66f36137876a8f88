"""
Bounded history of graded sessions.

The ledger is a JSON array of at most ``limit`` HistoryEntry objects,
newest first, kept in a single named slot of a persistence backend.

Schema (SqliteSlotBackend)
──────
table: slots
  name  TEXT PRIMARY KEY
  value TEXT NOT NULL  (the serialised ledger)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Protocol

from pydantic import ValidationError

from examecho.models import DEFAULT_TITLE, EvaluationResult, HistoryEntry, Quiz

logger = logging.getLogger(__name__)

HISTORY_SLOT = "examecho_history_v2"
DEFAULT_LIMIT = 10


# ── Persistence backends ───────────────────────────────────────────────────


class HistoryBackend(Protocol):
    """Read/overwrite access to the serialised ledger."""

    def read(self) -> str | None: ...

    def write(self, data: str) -> None: ...


class MemoryBackend:
    """Keeps the ledger in memory. Useful for tests and throwaway sessions."""

    def __init__(self, data: str | None = None) -> None:
        self.data = data

    def read(self) -> str | None:
        return self.data

    def write(self, data: str) -> None:
        self.data = data


class SqliteSlotBackend:
    """Stores the ledger in one row of a small key/value SQLite table."""

    def __init__(self, path: str | Path, slot: str = HISTORY_SLOT) -> None:
        self.path = Path(path)
        self.slot = slot
        self._initialised = False

    @contextmanager
    def _connect(self):
        """Yield a connected sqlite3.Connection, creating the file/dir if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        try:
            if not self._initialised:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS slots ("
                    " name  TEXT PRIMARY KEY,"
                    " value TEXT NOT NULL)"
                )
                self._initialised = True
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def read(self) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM slots WHERE name = ?", (self.slot,)
            ).fetchone()
        return row[0] if row else None

    def write(self, data: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO slots (name, value) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                (self.slot, data),
            )


# ── Store ──────────────────────────────────────────────────────────────────


class HistoryStore:
    """Append-only, bounded, most-recent-first ledger of graded sessions."""

    def __init__(
        self,
        backend: HistoryBackend,
        limit: int = DEFAULT_LIMIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.limit = limit
        self._clock = clock

    def load(self) -> list[HistoryEntry]:
        """Return the stored entries, newest first.

        Never raises: an absent, unreadable or unparsable ledger yields an
        empty list, and individually corrupt entries are skipped.
        """
        try:
            raw = self.backend.read()
        except Exception:
            logger.exception("History read failed; starting with empty history")
            return []
        if not raw:
            return []

        try:
            items = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("History slot is not valid JSON, ignoring it: %s", exc)
            return []
        if not isinstance(items, list):
            logger.warning("History slot holds %s, expected a list", type(items).__name__)
            return []

        entries: list[HistoryEntry] = []
        for index, item in enumerate(items):
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping corrupt history entry #%d: %s", index, exc)
        return entries[: self.limit]

    def get(self, entry_id: str) -> HistoryEntry | None:
        """Fetch a single entry by id.

        Args:
            entry_id: The hex id assigned by :meth:`append`.

        Returns:
            The HistoryEntry, or None if it is not in the ledger.
        """
        return next((e for e in self.load() if e.id == entry_id), None)

    def append(self, evaluation: EvaluationResult, quiz: Quiz) -> HistoryEntry:
        """Record a graded session and return the new entry.

        The entry is prepended and the ledger truncated to ``limit`` before
        it is written back in full.

        Args:
            evaluation: The grading result to store.
            quiz: The quiz that was graded; its title labels the entry.

        Returns:
            The stored HistoryEntry.
        """
        entry = HistoryEntry(
            id=uuid.uuid4().hex,
            timestamp=int(self._clock() * 1000),
            title=quiz.quiz_title.strip() or DEFAULT_TITLE,
            percentage=evaluation.percentage,
            results=evaluation,
            quiz=quiz,
        )
        ledger = [entry, *self.load()][: self.limit]
        self.backend.write(
            json.dumps([e.model_dump(mode="json") for e in ledger])
        )
        logger.info(
            "Saved history entry id=%s title=%r (%d/%d kept)",
            entry.id, entry.title, len(ledger), self.limit,
        )
        return entry
