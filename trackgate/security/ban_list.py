"""Ban list file loading.

Reads PeerGuardian, eMule DAT or plain CIDR/range lists, optionally
compressed (.gz, .bz2, .xz), into ban range records ready for
:meth:`BanRangeStore.bulk_create`.
"""

from __future__ import annotations

import bz2
import gzip
import logging
import lzma
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import aiofiles

from trackgate.exceptions import NotFoundError, ValidationError
from trackgate.utils.ip import parse_filter_line

logger = logging.getLogger(__name__)

_OPENERS = {".gz": gzip.open, ".bz2": bz2.open, ".xz": lzma.open}


async def _read_lines(path: Path) -> AsyncIterator[str]:
    opener = _OPENERS.get(path.suffix.lower())
    if opener is None:
        async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
            async for line in f:
                yield line
        return

    with opener(path, "rt", encoding="utf-8", errors="replace") as f:
        for line in f:
            yield line


async def load_ban_list(
    file_path: str | Path,
    reason: str | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Parse a ban list file.

    Args:
        file_path: List file, plain or compressed
        reason: Reason used for lines that carry no description

    Returns:
        Tuple of (ban range records, number of invalid lines)

    Raises:
        NotFoundError: If the file does not exist

    """
    path = Path(file_path).expanduser()
    if not path.exists():
        msg = f"Ban list not found: {path}"
        raise NotFoundError(msg)

    records: list[dict[str, Any]] = []
    errors = 0
    async for line in _read_lines(path):
        try:
            parsed = parse_filter_line(line)
        except ValidationError:
            logger.debug("Invalid ban list line: %.50s", line.strip())
            errors += 1
            continue
        if parsed is None:
            continue
        from_ip, to_ip, description = parsed
        label = description or reason
        records.append(
            {
                "from_ip": from_ip,
                "to_ip": to_ip,
                "reason": label[:255] if label else None,
            }
        )

    logger.info("Parsed %d ranges from %s (%d errors)", len(records), path, errors)
    return records, errors
