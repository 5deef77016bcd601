"""
World book store adapters and reconciliation.

The engine owns five entries in the world book:

  - segmented_text    verbatim recent passages
  - small_summary     per-chunk summaries of the middle range
  - large_summary     cumulative summary of everything older
  - history_text      every passage verbatim (the persisted ledger)
  - context_settings  JSON: mode and config

Adapters hold no authoritative state; they mirror what the controller
tells them. ``Reconciler`` remembers the last payload known to be in the
store for each key, so only changed entries are written.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Mapping, Optional

from psycopg import InterfaceError, OperationalError

from .config import ENTRY_SPECS, EntrySpec
from .errors import StoreError

logger = logging.getLogger(__name__)


class WorldbookStore(ABC):
    """Keyed read/write/delete contract consumed by the controller."""

    @abstractmethod
    def read_entry(self, key: str) -> Optional[str]:
        """Return the entry content, or None if absent."""

    @abstractmethod
    def write_entry(self, key: str, value: str) -> None:
        """Create or overwrite an entry. Raises StoreError on failure."""

    @abstractmethod
    def delete_entry(self, key: str) -> None:
        """Delete an entry; deleting an absent entry succeeds."""


class InMemoryWorldbook(WorldbookStore):
    """Dict-backed world book for local-only use and tests."""

    def __init__(self, entries: Optional[Mapping[str, str]] = None):
        self._entries: dict[str, str] = dict(entries or {})

    def read_entry(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def write_entry(self, key: str, value: str) -> None:
        self._entries[key] = value

    def delete_entry(self, key: str) -> None:
        self._entries.pop(key, None)

    def entries(self) -> dict[str, str]:
        return dict(self._entries)


class PostgresWorldbook(WorldbookStore):
    """World book entries stored in a PostgreSQL table."""

    def __init__(self, pg_conn, worldbook_name: str = "default"):
        self._pg_conn = pg_conn
        self.worldbook_name = worldbook_name
        self._setup_table()

    def _setup_table(self):
        """Create worldbook_entries table if it does not exist."""
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS worldbook_entries (
                        worldbook TEXT NOT NULL,
                        entry_key TEXT NOT NULL,
                        content TEXT NOT NULL,
                        depth INT NOT NULL DEFAULT 0,
                        position_order INT NOT NULL DEFAULT 0,
                        role TEXT NOT NULL DEFAULT 'system',
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        PRIMARY KEY (worldbook, entry_key)
                    )
                """)
        except Exception as e:
            logger.warning("Failed to create worldbook_entries table: %s", e)
            raise self._error("setup", "*", e) from e

    @staticmethod
    def _retryable(exc: Exception) -> bool:
        return isinstance(exc, (OperationalError, InterfaceError))

    def _error(self, action: str, key: str, exc: Exception) -> StoreError:
        return StoreError(
            f"Failed to {action} world book entry {key!r}: {exc}",
            retryable=self._retryable(exc),
            failed=() if key == "*" else (key,),
        )

    def read_entry(self, key: str) -> Optional[str]:
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "SELECT content FROM worldbook_entries WHERE worldbook = %s AND entry_key = %s",
                    (self.worldbook_name, key),
                )
                row = cur.fetchone()
        except Exception as e:
            logger.warning("Failed to read world book entry %s: %s", key, e)
            raise self._error("read", key, e) from e
        if not row:
            return None
        return row["content"] if isinstance(row, dict) else row[0]

    def write_entry(self, key: str, value: str) -> None:
        spec = ENTRY_SPECS.get(key) or EntrySpec(key, depth=0, order=0)
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO worldbook_entries
                        (worldbook, entry_key, content, depth, position_order, role, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (worldbook, entry_key) DO UPDATE SET
                        content = EXCLUDED.content,
                        updated_at = now()
                    """,
                    (self.worldbook_name, key, value, spec.depth, spec.order, spec.role),
                )
        except Exception as e:
            logger.warning("Failed to write world book entry %s: %s", key, e)
            raise self._error("write", key, e) from e

    def delete_entry(self, key: str) -> None:
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM worldbook_entries WHERE worldbook = %s AND entry_key = %s",
                    (self.worldbook_name, key),
                )
        except Exception as e:
            logger.warning("Failed to delete world book entry %s: %s", key, e)
            raise self._error("delete", key, e) from e


_UNKNOWN = object()

# Last operation on the key failed; its content is unknown and must be rewritten
_STALE = object()


class Reconciler:
    """
    Propagates desired entry payloads to a store, tracking what it
    believes each entry currently holds.

    Known state per key: a string (entry holds it), None (entry absent),
    stale (the last write or delete failed) or unknown (never read nor
    written). Stale entries are always dirty. Unknown entries are never
    deleted unless forced, so content created outside the engine
    survives until the engine actually has something to put there.
    """

    def __init__(self, store: WorldbookStore):
        self.store = store
        self._known: dict[str, object] = {}

    def load(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        """Read entries from the store and remember their contents."""
        values: dict[str, Optional[str]] = {}
        for key in keys:
            value = self._call("read", self.store.read_entry, key)
            self._known[key] = value
            values[key] = value
        return values

    def forget(self, keys: Iterable[str]):
        """Treat entries as unknown again, so empty payloads leave them alone."""
        for key in keys:
            self._known.pop(key, None)

    def dirty_keys(self, desired: Mapping[str, str], force: bool = False) -> list[str]:
        dirty = []
        for key, value in desired.items():
            current = self._known.get(key, _UNKNOWN)
            if value:
                if force or current != value:
                    dirty.append(key)
            elif current is _STALE:
                dirty.append(key)
            elif current is not None and (force or current is not _UNKNOWN):
                dirty.append(key)
        return dirty

    def apply(self, desired: Mapping[str, str], force: bool = False) -> list[str]:
        """
        Write changed non-empty payloads and delete entries whose payload
        became empty. Every dirty key is attempted; raises StoreError
        listing failed and succeeded keys if any operation failed.
        """
        return self._run([(key, desired[key]) for key in self.dirty_keys(desired, force)])

    def delete_all(self, keys: Iterable[str]) -> list[str]:
        """Delete every key regardless of known state."""
        return self._run([(key, "") for key in keys])

    def _run(self, operations: list[tuple[str, str]]) -> list[str]:
        succeeded: list[str] = []
        failed: dict[str, StoreError] = {}
        for key, value in operations:
            try:
                if value:
                    self._call("write", self.store.write_entry, key, value)
                    self._known[key] = value
                else:
                    self._call("delete", self.store.delete_entry, key)
                    self._known[key] = None
                succeeded.append(key)
            except StoreError as e:
                self._known[key] = _STALE
                failed[key] = e

        if failed:
            raise StoreError(
                "; ".join(e.reason for e in failed.values()),
                retryable=all(e.retryable for e in failed.values()),
                failed=failed.keys(),
                partial=succeeded,
            )
        return succeeded

    def _call(self, action: str, fn, key: str, *args):
        try:
            return fn(key, *args)
        except StoreError as e:
            if e.failed:
                raise
            raise StoreError(e.reason, retryable=e.retryable, failed=(key,)) from e
        except Exception as e:
            logger.warning("World book %s failed for %s: %s", action, key, e)
            raise StoreError(
                f"Failed to {action} world book entry {key!r}: {e}",
                retryable=isinstance(e, (TimeoutError, ConnectionError)),
                failed=(key,),
            ) from e
