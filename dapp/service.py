from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from .config import load_config
from .live import LiveMessage, StateChanged
from .reconcile import RaffleSession
from .utils import format_eth_amount


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def describe(session: RaffleSession) -> str:
    financials = session.financials
    pool = financials.prize_pool.value
    remaining = financials.time_remaining()
    parts = [
        f"round={financials.round_number.value}",
        f"pool={format_eth_amount(pool) if pool is not None else 'n/a'}",
        f"players={financials.players_count.value}",
        f"entries={financials.entries_count.value}",
    ]
    if remaining is not None:
        parts.append(f"closes_in={remaining.hours:02d}:{remaining.minutes:02d}:{remaining.seconds:02d}")
    parts.append(f"winners_feed={session.recent_winners.connection_state.value}")
    if session.players.connection_state is not None:
        parts.append(f"players_feed={session.players.connection_state.value}")
    return " ".join(parts)


def _log_state(logger: logging.Logger, feed: str):
    def listener(message: LiveMessage) -> None:
        if isinstance(message, StateChanged):
            logger.info("%s feed is %s (attempt %s)", feed, message.connection_state.value, message.attempt)

    return listener


async def run(args: argparse.Namespace) -> None:
    settings = load_config(args.env_file)
    configure_logging(args.verbose)
    logger = logging.getLogger("raffle.client")

    session = RaffleSession.from_settings(settings)
    session.recent_winners.subscribe(_log_state(logger, "recent winners"))
    session.players.subscribe(_log_state(logger, "round players"))

    try:
        await session.start()
        if session.wrong_network:
            logger.warning(
                "Connected to the wrong network; writes are disabled until chain %s is used", settings.chain_id
            )
        if args.enter and not session.wrong_network:
            tx_hash = await session.enter_raffle()
            if tx_hash is None:
                logger.error("Entry failed: %s", session.write_error.message)
        if args.claim and not session.wrong_network:
            tx_hash = await session.claim_prize()
            if tx_hash is None:
                logger.error("Claim failed: %s", session.write_error.message)

        while True:
            logger.info(describe(session))
            if session.announcement.is_visible:
                logger.info(session.announcement.headline)
                session.dismiss_announcement()
            for winner in session.recent_winners.winners()[:3]:
                logger.debug("Recent winner #%s %s %s %s", winner.round_number, winner.address, winner.prize, winner.time)
            await asyncio.sleep(args.status_interval)
    finally:
        await session.close()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Raffle live state client")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file with credentials")
    parser.add_argument("--enter", action="store_true", help="Enter the current round once on startup.")
    parser.add_argument("--claim", action="store_true", help="Claim any unclaimed prize on startup.")
    parser.add_argument(
        "--status-interval", type=float, default=10.0, help="Seconds between status log lines."
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging (default INFO)."
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Raffle client stopped by user.")
    except Exception:
        logging.getLogger("raffle.client").exception("Raffle client crashed; please restart it.")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
