from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

import requests

from .exceptions import QueryError
from .schemas import IndexerQuery, RoundPlayerRecord, RoundRecord, parse_rows
from .types import RoundPlayerRow, RoundRow


class IndexerQueryClient:
    """One-shot structured queries against the indexer's ``/query`` endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 10,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._logger = logger or logging.getLogger("raffle.indexer_client")

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/query"

    async def recent_rounds(self, limit: int = 12, winners_only: bool = True) -> List[RoundRow]:
        """Latest completed rounds, newest first.

        With ``winners_only`` voided rounds (no winner) are filtered out; round
        history views pass ``False`` to keep them.
        """

        raw_rows = await self.execute(IndexerQuery.recent_rounds(limit))
        rows = [record.to_row() for record in parse_rows(raw_rows, RoundRecord)]
        if winners_only:
            rows = [row for row in rows if not row.is_voided]
        return rows

    async def round_players(self, round_number: int) -> List[RoundPlayerRow]:
        raw_rows = await self.execute(IndexerQuery.round_players(round_number))
        return [record.to_row() for record in parse_rows(raw_rows, RoundPlayerRecord)]

    async def execute(self, query: IndexerQuery) -> List[Any]:
        return await asyncio.to_thread(self._post_query, query.model_dump())

    def _post_query(self, body: dict) -> List[Any]:
        endpoint = self.endpoint
        try:
            resp = self._session.post(endpoint, json=body, timeout=self._timeout_seconds)
        except requests.RequestException as exc:
            raise QueryError(f"Indexer request failed: {exc}", endpoint=endpoint) from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise QueryError(
                "Indexer returned a non-JSON response",
                endpoint=endpoint,
                status_code=resp.status_code,
            ) from exc

        if isinstance(payload, dict) and "error" in payload:
            raise QueryError(
                f"Indexer error: {payload['error']}",
                endpoint=endpoint,
                status_code=resp.status_code,
                details={"error": payload["error"]},
            )
        if resp.status_code >= 400:
            raise QueryError(
                f"HTTP error: {resp.status_code}",
                endpoint=endpoint,
                status_code=resp.status_code,
            )
        if not isinstance(payload, list):
            raise QueryError(
                "Indexer returned a non-list payload",
                endpoint=endpoint,
                status_code=resp.status_code,
            )
        self._logger.debug("Query %s returned %s rows", body.get("table"), len(payload))
        return payload

    def close(self) -> None:
        self._session.close()
