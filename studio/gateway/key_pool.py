"""Key Pool — credential entries plus the round-robin rotation cursor.

The pool is process-local state with an explicit owner: every mutation
replaces the entry tuple through a pure transform and then notifies the
optional ``on_change`` listener (used to persist the pool).

Rotation:
  next() = enabled[cursor % len(enabled)]

``next()`` never advances the cursor. The Dispatcher walks the ring on a
local copy and commits the final position once per dispatch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace

from studio.core.exceptions import NoUsableCredentialError, NotFoundError
from studio.gateway.normalizer import mask_key
from studio.gateway.types import MAX_KEYS, ApiKeyEntry, KeyHealth

logger = logging.getLogger(__name__)

_HEALTH_FIELDS = frozenset(
    {"health", "last_checked_at", "last_error", "has_video_model", "has_image_model"}
)


def parse_bulk_keys(text: str) -> list[tuple[str, str]]:
    """Parse newline-separated ``label|key`` or bare ``key`` lines into (label, key) pairs."""
    pairs: list[tuple[str, str]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        label, sep, key = line.partition("|")
        if sep:
            pairs.append((label.strip(), key.strip()))
        else:
            pairs.append(("", line))
    return pairs


class KeyPool:
    """Credential pool with a persisted rotation cursor.

    Usage:
        pool = KeyPool()
        pool.add("xai-...", label="main")
        entry = pool.next()          # does not advance
        pool.set_cursor(pool.cursor + 1)
    """

    def __init__(
        self,
        entries: Iterable[ApiKeyEntry] = (),
        cursor: int = 0,
        capacity: int = MAX_KEYS,
        on_change: Callable[[KeyPool], None] | None = None,
    ):
        self.capacity = capacity
        self._entries: tuple[ApiKeyEntry, ...] = tuple(entries)[:capacity]
        self._cursor = max(0, int(cursor))
        self.on_change = on_change

    # -- Read side ------------------------------------------------------------

    @property
    def entries(self) -> tuple[ApiKeyEntry, ...]:
        return self._entries

    @property
    def enabled(self) -> tuple[ApiKeyEntry, ...]:
        return tuple(e for e in self._entries if e.enabled)

    @property
    def cursor(self) -> int:
        return self._cursor

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key_id: str | None) -> ApiKeyEntry | None:
        if not key_id:
            return None
        for entry in self._entries:
            if entry.id == key_id:
                return entry
        return None

    def next(self) -> ApiKeyEntry | None:
        """The credential the next dispatch would start with, or None."""
        enabled = self.enabled
        if not enabled:
            return None
        return enabled[self._cursor % len(enabled)]

    def require_next(self) -> ApiKeyEntry:
        entry = self.next()
        if entry is None:
            raise NoUsableCredentialError()
        return entry

    # -- Mutations ------------------------------------------------------------

    def _commit(self, entries: Iterable[ApiKeyEntry]) -> None:
        self._entries = tuple(entries)[: self.capacity]
        if self.on_change:
            self.on_change(self)

    def add(self, key: str, label: str | None = None) -> ApiKeyEntry | None:
        """Add one credential. Returns the new entry, or None for blank / duplicate keys."""
        added = self.add_many([(label or "", key)])
        return added[0] if added else None

    def add_many(self, items: Iterable[tuple[str, str]]) -> list[ApiKeyEntry]:
        """Add (label, key) pairs; each new entry goes to the front of the pool."""
        existing = {e.key.strip() for e in self._entries}
        entries = list(self._entries)
        added: list[ApiKeyEntry] = []

        for label, key in items:
            key = key.strip()
            if not key or key in existing:
                continue
            existing.add(key)
            entry = ApiKeyEntry(key=key, label=(label or "").strip() or mask_key(key))
            entries.insert(0, entry)
            added.append(entry)

        if added:
            self._commit(entries)
            logger.info("Key pool: added %d credential(s), size=%d", len(added), len(self._entries))
        return [e for e in added if e in self._entries]

    def import_bulk(self, text: str) -> list[ApiKeyEntry]:
        return self.add_many(parse_bulk_keys(text))

    def toggle_enabled(self, key_id: str) -> ApiKeyEntry:
        entry = self._require(key_id)
        updated = replace(entry, enabled=not entry.enabled)
        self._commit(updated if e.id == key_id else e for e in self._entries)
        self.normalize_cursor()
        return updated

    def remove(self, key_id: str) -> None:
        self._require(key_id)
        self._commit(e for e in self._entries if e.id != key_id)
        self.normalize_cursor()

    def set_health(self, key_id: str, **patch) -> ApiKeyEntry | None:
        """Merge a partial health update. Unknown ids are ignored (the key may be gone)."""
        unknown = set(patch) - _HEALTH_FIELDS
        if unknown:
            raise TypeError(f"Not a health field: {', '.join(sorted(unknown))}")
        if "health" in patch:
            patch["health"] = KeyHealth(patch["health"])

        entry = self.get(key_id)
        if entry is None:
            return None
        updated = replace(entry, **patch)
        self._commit(updated if e.id == key_id else e for e in self._entries)
        return updated

    def set_cursor(self, value: int) -> None:
        """Commit a rotation position, reduced modulo the enabled count."""
        count = len(self.enabled)
        cursor = value % count if count else 0
        if cursor != self._cursor:
            self._cursor = cursor
            if self.on_change:
                self.on_change(self)

    def normalize_cursor(self) -> None:
        self.set_cursor(self._cursor)

    def _require(self, key_id: str) -> ApiKeyEntry:
        entry = self.get(key_id)
        if entry is None:
            raise NotFoundError(f"API key {key_id} not found")
        return entry
