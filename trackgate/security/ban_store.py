"""Ban range persistence and administration.

:class:`BanRangeStore` is the only component that mutates persisted ban
ranges. Each successful mutation rebuilds the :class:`BanRangeIndex` before
returning, so a new ban is enforced as soon as the creating call returns.

Backends hold the rows. Two ranges are duplicates when their
``(from_ip, to_ip)`` bounds match.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import pydantic

from trackgate.exceptions import NotFoundError, ValidationError
from trackgate.models import BanRange, BanRangePage, Pagination
from trackgate.security.ban_index import BanRangeIndex
from trackgate.utils.ip import address_to_int

logger = logging.getLogger(__name__)

_PATCHABLE_FIELDS = frozenset({"from_ip", "to_ip", "reason"})


class BanRangeBackend(ABC):
    """Storage backend for ban ranges."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored ranges."""

    @abstractmethod
    def page(self, offset: int, limit: int) -> list[BanRange]:
        """Ranges ordered newest first."""

    @abstractmethod
    def all(self) -> list[BanRange]:
        """Every stored range, in no particular order."""

    @abstractmethod
    def get(self, range_id: int) -> BanRange | None:
        """Range by id, or None."""

    @abstractmethod
    def insert(self, ban: BanRange) -> BanRange:
        """Insert one range and return it with its id.

        Raises:
            ValidationError: If the range duplicates a stored one

        """

    @abstractmethod
    def insert_many(self, bans: list[BanRange]) -> int:
        """Insert ranges, skipping duplicates; return the inserted count."""

    @abstractmethod
    def update(self, range_id: int, ban: BanRange) -> BanRange | None:
        """Replace a stored range; None if the id is unknown.

        Raises:
            ValidationError: If the new bounds duplicate another range

        """

    @abstractmethod
    def delete(self, range_id: int) -> BanRange | None:
        """Delete a range and return it; None if the id is unknown."""

    def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class MemoryBanRangeBackend(BanRangeBackend):
    """Dictionary-backed storage, mainly for tests and ephemeral trackers."""

    def __init__(self) -> None:
        """Initialize empty storage."""
        self._rows: dict[int, BanRange] = {}
        self._keys: dict[tuple[int, int], int] = {}
        self._next_id = 1

    def count(self) -> int:
        """Number of stored ranges."""
        return len(self._rows)

    def page(self, offset: int, limit: int) -> list[BanRange]:
        """Ranges ordered newest first."""
        ordered = sorted(
            self._rows.values(),
            key=lambda r: (r.created, r.id or 0),
            reverse=True,
        )
        return [r.model_copy() for r in ordered[offset : offset + limit]]

    def all(self) -> list[BanRange]:
        """Every stored range."""
        return [r.model_copy() for r in self._rows.values()]

    def get(self, range_id: int) -> BanRange | None:
        """Range by id, or None."""
        row = self._rows.get(range_id)
        return row.model_copy() if row is not None else None

    def insert(self, ban: BanRange) -> BanRange:
        """Insert one range."""
        if ban.key in self._keys:
            msg = "Ban range already exists"
            raise ValidationError(
                msg, {"from_ip": ban.from_ip, "to_ip": ban.to_ip}
            )
        stored = ban.model_copy(update={"id": self._next_id})
        self._next_id += 1
        self._rows[stored.id] = stored  # type: ignore[index]
        self._keys[stored.key] = stored.id  # type: ignore[assignment]
        return stored.model_copy()

    def insert_many(self, bans: list[BanRange]) -> int:
        """Insert ranges, skipping duplicates."""
        inserted = 0
        for ban in bans:
            if ban.key in self._keys:
                continue
            self.insert(ban)
            inserted += 1
        return inserted

    def update(self, range_id: int, ban: BanRange) -> BanRange | None:
        """Replace a stored range."""
        current = self._rows.get(range_id)
        if current is None:
            return None
        owner = self._keys.get(ban.key)
        if owner is not None and owner != range_id:
            msg = "Ban range already exists"
            raise ValidationError(
                msg, {"from_ip": ban.from_ip, "to_ip": ban.to_ip}
            )
        stored = ban.model_copy(update={"id": range_id})
        del self._keys[current.key]
        self._rows[range_id] = stored
        self._keys[stored.key] = range_id
        return stored.model_copy()

    def delete(self, range_id: int) -> BanRange | None:
        """Delete a range."""
        row = self._rows.pop(range_id, None)
        if row is None:
            return None
        del self._keys[row.key]
        return row


class SQLiteBanRangeBackend(BanRangeBackend):
    """SQLite storage with a unique (from_ip, to_ip) constraint."""

    def __init__(self, database_path: Path | str):
        """Open (and create if needed) the ban database.

        Args:
            database_path: Path to the SQLite file, or ":memory:"

        """
        self.database_path = str(database_path)
        if self.database_path != ":memory:":
            path = Path(self.database_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.database_path = str(path)
        self.db = self._init_database()

    def _init_database(self) -> sqlite3.Connection:
        db = sqlite3.connect(self.database_path, check_same_thread=False)
        db.row_factory = sqlite3.Row
        db.execute("""
            CREATE TABLE IF NOT EXISTS ip_bans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_ip INTEGER NOT NULL,
                to_ip INTEGER NOT NULL,
                reason TEXT,
                created REAL NOT NULL,
                UNIQUE (from_ip, to_ip)
            )
        """)
        db.execute("""
            CREATE INDEX IF NOT EXISTS idx_ip_bans_to_ip ON ip_bans(to_ip)
        """)
        db.commit()
        return db

    @staticmethod
    def _row_to_range(row: sqlite3.Row) -> BanRange:
        return BanRange(
            id=row["id"],
            from_ip=row["from_ip"],
            to_ip=row["to_ip"],
            reason=row["reason"],
            created=row["created"],
        )

    def count(self) -> int:
        """Number of stored ranges."""
        return self.db.execute("SELECT COUNT(*) FROM ip_bans").fetchone()[0]

    def page(self, offset: int, limit: int) -> list[BanRange]:
        """Ranges ordered newest first."""
        cursor = self.db.execute(
            "SELECT * FROM ip_bans ORDER BY created DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_range(row) for row in cursor.fetchall()]

    def all(self) -> list[BanRange]:
        """Every stored range."""
        cursor = self.db.execute("SELECT * FROM ip_bans")
        return [self._row_to_range(row) for row in cursor.fetchall()]

    def get(self, range_id: int) -> BanRange | None:
        """Range by id, or None."""
        row = self.db.execute(
            "SELECT * FROM ip_bans WHERE id = ?", (range_id,)
        ).fetchone()
        return self._row_to_range(row) if row is not None else None

    def insert(self, ban: BanRange) -> BanRange:
        """Insert one range."""
        try:
            with self.db:
                cursor = self.db.execute(
                    "INSERT INTO ip_bans (from_ip, to_ip, reason, created) "
                    "VALUES (?, ?, ?, ?)",
                    (ban.from_ip, ban.to_ip, ban.reason, ban.created),
                )
        except sqlite3.IntegrityError as e:
            msg = "Ban range already exists"
            raise ValidationError(
                msg, {"from_ip": ban.from_ip, "to_ip": ban.to_ip}
            ) from e
        return ban.model_copy(update={"id": cursor.lastrowid})

    def insert_many(self, bans: list[BanRange]) -> int:
        """Insert ranges, skipping duplicates."""
        before = self.db.total_changes
        with self.db:
            self.db.executemany(
                "INSERT OR IGNORE INTO ip_bans (from_ip, to_ip, reason, created) "
                "VALUES (?, ?, ?, ?)",
                [(b.from_ip, b.to_ip, b.reason, b.created) for b in bans],
            )
        return self.db.total_changes - before

    def update(self, range_id: int, ban: BanRange) -> BanRange | None:
        """Replace a stored range."""
        try:
            with self.db:
                cursor = self.db.execute(
                    "UPDATE ip_bans SET from_ip = ?, to_ip = ?, reason = ? WHERE id = ?",
                    (ban.from_ip, ban.to_ip, ban.reason, range_id),
                )
        except sqlite3.IntegrityError as e:
            msg = "Ban range already exists"
            raise ValidationError(
                msg, {"from_ip": ban.from_ip, "to_ip": ban.to_ip}
            ) from e
        if cursor.rowcount == 0:
            return None
        return self.get(range_id)

    def delete(self, range_id: int) -> BanRange | None:
        """Delete a range."""
        row = self.get(range_id)
        if row is None:
            return None
        with self.db:
            self.db.execute("DELETE FROM ip_bans WHERE id = ?", (range_id,))
        return row

    def close(self) -> None:
        """Close the database connection."""
        self.db.close()


def _validate_range(data: BanRange | Mapping[str, Any]) -> BanRange:
    raw = data.model_dump() if isinstance(data, BanRange) else dict(data)
    raw.pop("id", None)
    try:
        return BanRange.model_validate(raw)
    except pydantic.ValidationError as e:
        msg = f"Invalid ban range: {e.errors()[0]['msg']}"
        raise ValidationError(msg, {"errors": e.errors(include_url=False)}) from e


class BanRangeStore:
    """Administrative CRUD over ban ranges that keeps the index current."""

    def __init__(
        self,
        backend: BanRangeBackend,
        index: BanRangeIndex | None = None,
    ):
        """Initialize the store.

        Args:
            backend: Persistence backend
            index: Index to keep refreshed (a new one is created if omitted)

        """
        self.backend = backend
        self.index = index if index is not None else BanRangeIndex()
        self._write_lock = threading.RLock()

    def load(self) -> None:
        """Build the index from the backend contents."""
        with self._write_lock:
            self._refresh()
        logger.info("Loaded %d ban ranges", len(self.index))

    def _refresh(self) -> None:
        self.index.rebuild(self.backend.all())

    def list(self, page: int = 1, limit: int = 20) -> BanRangePage:
        """List ranges newest first with page metadata."""
        if page < 1 or limit < 1:
            msg = "page and limit must be positive"
            raise ValidationError(msg, {"page": page, "limit": limit})

        total = self.backend.count()
        items = self.backend.page((page - 1) * limit, limit)
        return BanRangePage(
            items=items,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit),
            ),
        )

    def get(self, range_id: int) -> BanRange:
        """Fetch one range.

        Raises:
            NotFoundError: If no range has this id

        """
        ban = self.backend.get(range_id)
        if ban is None:
            msg = "IP ban not found"
            raise NotFoundError(msg, {"id": range_id})
        return ban

    def create(self, data: BanRange | Mapping[str, Any]) -> BanRange:
        """Persist a new range and refresh the index.

        Raises:
            ValidationError: If from_ip > to_ip, bounds are outside IPv4 or the
                range already exists

        """
        ban = _validate_range(data)
        with self._write_lock:
            created = self.backend.insert(ban)
            self._refresh()
        logger.info(
            "IP ban created: %s - %s (id=%s)", ban.from_ip, ban.to_ip, created.id
        )
        return created

    def bulk_create(self, items: Iterable[BanRange | Mapping[str, Any]]) -> int:
        """Persist many ranges, skipping duplicates, with one index refresh.

        Every entry is validated before anything is written.

        Returns:
            Number of ranges actually inserted

        """
        bans = [_validate_range(item) for item in items]
        with self._write_lock:
            inserted = self.backend.insert_many(bans)
            self._refresh()
        logger.info(
            "Bulk IP bans created: %d records (%d skipped)",
            inserted,
            len(bans) - inserted,
        )
        return inserted

    def update(self, range_id: int, patch: Mapping[str, Any]) -> BanRange:
        """Apply a partial update and refresh the index.

        Raises:
            NotFoundError: If no range has this id
            ValidationError: If the patch is invalid

        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            msg = f"Cannot update fields: {', '.join(sorted(unknown))}"
            raise ValidationError(msg)

        with self._write_lock:
            current = self.get(range_id)
            merged = _validate_range({**current.model_dump(), **patch})
            merged = merged.model_copy(update={"created": current.created})
            updated = self.backend.update(range_id, merged)
            if updated is None:
                msg = "IP ban not found"
                raise NotFoundError(msg, {"id": range_id})
            self._refresh()
        logger.info("IP ban updated: %s", range_id)
        return updated

    def delete(self, range_id: int) -> BanRange:
        """Delete a range and refresh the index.

        Raises:
            NotFoundError: If no range has this id (the index is left untouched)

        """
        with self._write_lock:
            deleted = self.backend.delete(range_id)
            if deleted is None:
                msg = "IP ban not found"
                raise NotFoundError(msg, {"id": range_id})
            self._refresh()
        logger.info("IP ban deleted: %s", range_id)
        return deleted

    def contains(self, address: str | int) -> bool:
        """Return True if the address is currently banned."""
        value = address_to_int(address)
        return value is not None and self.index.query(value)

    def close(self) -> None:
        """Close the backend."""
        self.backend.close()
