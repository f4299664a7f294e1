"""Server-Sent Events channel to the indexer's ``/live`` endpoint."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, List, Optional, Protocol, Tuple

import aiohttp

from .exceptions import StreamError
from .schemas import IndexerQuery


class LiveTransport(Protocol):
    def stream(
        self, query: IndexerQuery, on_open: Callable[[], None]
    ) -> AsyncIterator[List[Any]]:
        ...


async def iter_sse_events(lines: AsyncIterator[bytes]) -> AsyncIterator[Tuple[str, str]]:
    """Yield ``(event, data)`` pairs from a line-oriented SSE body."""

    event = "message"
    data: List[str] = []
    async for raw in lines:
        line = raw.decode("utf-8").rstrip("\r\n")
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class SseLiveTransport:
    """Opens one HTTP connection per stream and decodes snapshot frames."""

    def __init__(self, base_url: str, connect_timeout: Optional[float] = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout)

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/live"

    async def stream(
        self, query: IndexerQuery, on_open: Callable[[], None]
    ) -> AsyncIterator[List[Any]]:
        endpoint = self.endpoint
        params = {"query": query.model_dump_json()}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(
                    endpoint, params=params, headers={"Accept": "text/event-stream"}
                ) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise StreamError(
                            f"Subscription rejected with HTTP {resp.status}",
                            endpoint=endpoint,
                            payload=body,
                        )
                    on_open()
                    async for event, data in iter_sse_events(resp.content):
                        if event not in ("snapshot", "error"):
                            continue
                        yield self._decode(event, data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StreamError(f"Live connection failed: {exc}", endpoint=endpoint) from exc
        raise StreamError("Live stream closed by server", endpoint=endpoint)

    def _decode(self, event: str, data: str) -> List[Any]:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise StreamError("Malformed push payload", endpoint=self.endpoint, payload=data) from exc
        if event == "error":
            message = payload.get("error") if isinstance(payload, dict) else payload
            raise StreamError(f"Subscription error: {message}", endpoint=self.endpoint, payload=payload)
        if not isinstance(payload, list):
            raise StreamError("Snapshot payload is not a list", endpoint=self.endpoint, payload=payload)
        return payload
