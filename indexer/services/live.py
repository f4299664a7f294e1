"""Server-Sent Events snapshots of a structured query."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..schemas import QueryRequest
from .rounds import RoundRepository


def sse_frame(event: str, payload) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def snapshot_stream(
    repository: RoundRepository,
    query: QueryRequest,
    poll_seconds: float = 1.0,
    keepalive_seconds: float = 15.0,
    max_snapshots: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
) -> Iterator[str]:
    """Yield a snapshot on connect, then a fresh one whenever the store version moves.

    Every snapshot is the complete result set of ``query``. A storage failure is
    reported as a single ``error`` frame and ends the stream.
    """

    logger = logger or logging.getLogger("raffle.indexer.live")
    sent = 0
    try:
        version = repository.get_version()
        yield sse_frame("snapshot", repository.query(query))
        sent += 1
        idle = 0.0
        while max_snapshots is None or sent < max_snapshots:
            sleep(poll_seconds)
            current = repository.get_version()
            if current == version:
                idle += poll_seconds
                if idle >= keepalive_seconds:
                    idle = 0.0
                    yield ": keepalive\n\n"
                continue
            version = current
            idle = 0.0
            yield sse_frame("snapshot", repository.query(query))
            sent += 1
    except (SQLAlchemyError, ValueError) as exc:
        logger.exception("Live query on %s failed: %s", query.table, exc)
        yield sse_frame("error", {"error": "live query failed"})
