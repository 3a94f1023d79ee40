"""In-process index over banned IPv4 ranges.

Ranges are kept sorted by start address together with a running maximum of
end addresses, so a point query is one binary search regardless of how the
ranges overlap or nest.

The index is published as an immutable snapshot. ``rebuild`` builds a new
snapshot off to the side and swaps it in with a single attribute assignment,
so concurrent readers see either the old or the new set of ranges.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import TYPE_CHECKING

from trackgate.utils.ip import address_to_int

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable

    from trackgate.models import BanRange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    """Sorted, immutable view of the banned ranges."""

    starts: tuple[int, ...] = ()
    # reach[i] = max(end of ranges[0..i])
    reach: tuple[int, ...] = ()
    ranges: tuple[tuple[int, int], ...] = ()


_EMPTY = _Snapshot()


class BanRangeIndex:
    """Point-containment index over closed integer intervals."""

    def __init__(self, ranges: Iterable[BanRange] | None = None):
        """Initialize the index, optionally from an initial set of ranges."""
        self._snapshot: _Snapshot = _EMPTY
        if ranges is not None:
            self.rebuild(ranges)

    def rebuild(self, ranges: Iterable[BanRange]) -> None:
        """Replace the whole index with the given ranges."""
        bounds = sorted((r.from_ip, r.to_ip) for r in ranges)

        starts: list[int] = []
        reach: list[int] = []
        furthest = -1
        for start, end in bounds:
            furthest = max(furthest, end)
            starts.append(start)
            reach.append(furthest)

        self._snapshot = _Snapshot(
            starts=tuple(starts),
            reach=tuple(reach),
            ranges=tuple(bounds),
        )
        logger.debug("Ban index rebuilt with %d ranges", len(bounds))

    def query(self, address: int) -> bool:
        """Return True if address lies inside any banned range."""
        snapshot = self._snapshot
        i = bisect_right(snapshot.starts, address) - 1
        return i >= 0 and snapshot.reach[i] >= address

    def query_ip(self, address: str) -> bool:
        """Textual variant of :meth:`query`.

        Native IPv6 addresses are never inside an IPv4 range.

        Raises:
            ValueError: If the address cannot be parsed

        """
        value = address_to_int(address)
        return value is not None and self.query(value)

    @property
    def ranges(self) -> tuple[tuple[int, int], ...]:
        """Sorted (start, end) pairs of the current snapshot."""
        return self._snapshot.ranges

    def __contains__(self, address: object) -> bool:
        """Support ``address in index`` for integers."""
        return isinstance(address, int) and self.query(address)

    def __len__(self) -> int:
        """Number of ranges in the current snapshot."""
        return len(self._snapshot.starts)
