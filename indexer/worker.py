from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Protocol

from .config import AppSettings, load_settings
from .types import IndexedLog

if TYPE_CHECKING:
    from .services.rounds import RoundRepository


class LogSource(Protocol):
    async def get_safe_head(self) -> int:
        ...

    async def fetch_logs(self, from_block: int, to_block: int) -> List[IndexedLog]:
        ...


@dataclass
class IngestResult:
    from_block: int
    to_block: int
    fetched: int
    applied: int


class IngestionWorker:
    """Tails raffle logs into the store one block range at a time."""

    def __init__(
        self,
        settings: AppSettings,
        source: LogSource,
        repository: Optional[RoundRepository] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings
        self._source = source
        if repository is None:
            from .services.rounds import RoundRepository

            repository = RoundRepository()
        self._repo = repository
        self._logger = logger or logging.getLogger("raffle.indexer.ingest")

    def _next_block(self) -> int:
        last_block = self._repo.get_last_block()
        if last_block is None:
            return self._settings.chain.start_block
        return last_block + 1

    async def run_once(self) -> Optional[IngestResult]:
        head = await self._source.get_safe_head()
        from_block = self._next_block()
        if from_block > head:
            self._logger.debug("Up to date at block %s", head)
            return None

        to_block = min(head, from_block + self._settings.chain.batch_size - 1)
        logs = await self._source.fetch_logs(from_block, to_block)
        applied = self._repo.apply_logs(logs, last_block=to_block)
        if logs:
            self._logger.info(
                "Indexed blocks %s-%s: %s logs, %s new", from_block, to_block, len(logs), applied
            )
        return IngestResult(from_block=from_block, to_block=to_block, fetched=len(logs), applied=applied)

    async def run_forever(self) -> None:
        interval = self._settings.poll_interval_seconds
        self._logger.info("Ingestion loop started; poll interval=%s", interval)
        while True:
            try:
                result = await self.run_once()
            except Exception as exc:
                self._logger.exception("Ingestion iteration failed: %s", exc)
                result = None
            # Keep catching up without sleeping while whole batches are behind.
            if result is not None and result.to_block - result.from_block + 1 >= self._settings.chain.batch_size:
                continue
            await asyncio.sleep(interval)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


async def run(args: argparse.Namespace) -> None:
    settings = load_settings(args.env_file)
    configure_logging(args.verbose)

    from .db import engine
    from .models import Base
    from .services.chain import RaffleChainTailer
    from .services.rounds import RoundRepository

    Base.metadata.create_all(engine)
    repository = RoundRepository()
    repository.ensure_state()
    worker = IngestionWorker(settings, RaffleChainTailer.from_settings(settings.chain), repository)

    if args.once:
        await worker.run_once()
        return
    await worker.run_forever()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Raffle event indexer")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file with credentials")
    parser.add_argument("--once", action="store_true", help="Index one block range and exit.")
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging (default INFO)."
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Indexer stopped by user.")


if __name__ == "__main__":
    main()
