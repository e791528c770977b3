"""Forward a child process's merged output into the log, one record per line."""

from __future__ import annotations

import asyncio
import logging

STREAM_LIMIT = 1024 * 1024


async def forward_lines(stream: asyncio.StreamReader, sink: logging.Logger, *, label: str) -> int:
    """Log every line from ``stream`` until it closes and return the line count."""

    count = 0
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # readline() has already discarded the oversized chunk
            sink.warning("[%s] output line exceeded %d bytes and was dropped", label, STREAM_LIMIT)
            continue
        if not raw:
            return count
        sink.info("[%s] %s", label, raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        count += 1
