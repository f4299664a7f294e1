from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, List, Optional, Set

from .config import ClientSettings
from .contract_client import ContractRead, ContractReadClient
from .events import ContractEventWatcher
from .indexer_client import IndexerQueryClient
from .live import LiveMessage, LiveSubscription
from .schemas import IndexerQuery, RoundPlayerRecord, RoundRecord, parse_rows
from .transactions import DismissableError, TransactionClient
from .transport import LiveTransport, SseLiveTransport
from .types import (
    ConnectionState,
    CurrentRoundPlayer,
    DrawingResult,
    EntryRecorded,
    RecentWinner,
    RoundPlayerRow,
    RoundRow,
    TimeRemaining,
)
from .utils import format_eth_amount, format_relative_time, time_remaining, truncate_address

ENTRY_SUCCESS_SECONDS = 3.0

Scheduler = Callable[[float, Callable[[], None]], Any]


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class TransientFlag:
    """A UI flag that clears itself ``duration`` seconds after being triggered."""

    def __init__(self, duration: float = ENTRY_SUCCESS_SECONDS, schedule: Optional[Scheduler] = None) -> None:
        self.duration = duration
        self._schedule = schedule or _loop_scheduler
        self._handle: Any = None
        self.is_set = False

    def trigger(self) -> None:
        self._cancel()
        self.is_set = True
        self._handle = self._schedule(self.duration, self._expire)

    def clear(self) -> None:
        self._cancel()
        self.is_set = False

    def _expire(self) -> None:
        self._handle = None
        self.is_set = False

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class RoundFinancials:
    """Contract-sourced round figures and the event-driven refetch rules."""

    def __init__(self, reader: ContractReadClient, user_address: Optional[str] = None) -> None:
        self.entrance_fee = reader.bind("getEntranceFee")
        self.entry_deadline = reader.bind("getEntryDeadline")
        self.prize_pool = reader.bind("getPrizePool")
        self.players_count = reader.bind("getPlayersCount")
        self.entries_count = reader.bind("getEntriesCount")
        self.round_number = reader.bind("getRoundNumber")
        self.unclaimed_prize: Optional[ContractRead] = None
        self.player_entry_count: Optional[ContractRead] = None
        if user_address:
            self.unclaimed_prize = reader.bind("getUnclaimedPrize", user_address)
            self.player_entry_count = reader.bind("getPlayerEntryCount", user_address)

    @property
    def all_reads(self) -> List[ContractRead]:
        reads = [
            self.entrance_fee,
            self.entry_deadline,
            self.prize_pool,
            self.players_count,
            self.entries_count,
            self.round_number,
        ]
        return reads + self._user_reads(self.unclaimed_prize, self.player_entry_count)

    @staticmethod
    def _user_reads(*reads: Optional[ContractRead]) -> List[ContractRead]:
        return [read for read in reads if read is not None]

    async def load_all(self) -> None:
        await self._refetch(self.all_reads)

    async def on_draw_completed(self) -> None:
        reads = [
            self.prize_pool,
            self.entries_count,
            self.entry_deadline,
            self.round_number,
            self.players_count,
        ]
        await self._refetch(reads + self._user_reads(self.unclaimed_prize))

    async def on_entry_recorded(self) -> None:
        reads = [self.prize_pool, self.entries_count, self.players_count]
        await self._refetch(reads + self._user_reads(self.player_entry_count))

    async def on_prize_claimed(self) -> None:
        await self._refetch(self._user_reads(self.unclaimed_prize))

    @staticmethod
    async def _refetch(reads: List[ContractRead]) -> None:
        await asyncio.gather(*(read.refetch() for read in reads))

    @property
    def has_unclaimed_prize(self) -> bool:
        read = self.unclaimed_prize
        return read is not None and bool(read.value) and int(read.value) > 0

    def time_remaining(self, now: Optional[float] = None) -> Optional[TimeRemaining]:
        if self.entry_deadline.value is None:
            return None
        return time_remaining(int(self.entry_deadline.value), now)

    def is_entry_window_closed(self, now: Optional[float] = None) -> bool:
        remaining = self.time_remaining(now)
        return remaining is not None and remaining.is_zero


class WinnerAnnouncement:
    """Winner banner driven only by locally observed DrawCompleted logs."""

    def __init__(self, user_address: Optional[str] = None) -> None:
        self._user_address = user_address.lower() if user_address else None
        self.current: Optional[DrawingResult] = None

    def show(self, result: DrawingResult) -> None:
        self.current = result

    def dismiss(self) -> None:
        self.current = None

    @property
    def is_visible(self) -> bool:
        return self.current is not None

    @property
    def is_void(self) -> bool:
        return self.current is not None and self.current.is_void

    @property
    def is_current_user_winner(self) -> bool:
        if self.current is None or self.current.is_void or self._user_address is None:
            return False
        return self.current.winner.lower() == self._user_address

    @property
    def headline(self) -> Optional[str]:
        result = self.current
        if result is None:
            return None
        if result.is_void:
            return f"Round {result.round_number}: No winner - round reset"
        if self.is_current_user_winner:
            return f"You won {result.prize_formatted} ETH in round {result.round_number}!"
        return (
            f"Round {result.round_number} winner: {truncate_address(result.winner)}"
            f" won {result.prize_formatted} ETH"
        )


def _parse_winning_rounds(raw_rows) -> List[RoundRow]:
    rows = [record.to_row() for record in parse_rows(raw_rows, RoundRecord)]
    return [row for row in rows if not row.is_voided]


def _parse_round_players(raw_rows) -> List[RoundPlayerRow]:
    return [record.to_row() for record in parse_rows(raw_rows, RoundPlayerRecord)]


def to_recent_winner(row: RoundRow, now: Optional[float] = None) -> RecentWinner:
    return RecentWinner(
        round_number=row.round_number,
        address=truncate_address(row.winner) if row.winner else "No winner",
        prize=format_eth_amount(row.prize_pool),
        time=format_relative_time(row.completed_at, now),
    )


class RecentWinnersView:
    def __init__(
        self,
        indexer: IndexerQueryClient,
        transport: LiveTransport,
        limit: int = 12,
        reconnect_delay: float = 2.0,
        max_attempts: int = 5,
    ) -> None:
        self.limit = limit
        self.subscription: LiveSubscription[RoundRow] = LiveSubscription(
            IndexerQuery.recent_rounds(limit),
            transport,
            parse=_parse_winning_rounds,
            seed=lambda: indexer.recent_rounds(limit, winners_only=True),
            reconnect_delay=reconnect_delay,
            max_attempts=max_attempts,
            name="recent-winners",
        )

    def winners(self, now: Optional[float] = None) -> List[RecentWinner]:
        return [to_recent_winner(row, now) for row in self.subscription.rows]

    @property
    def connection_state(self) -> ConnectionState:
        return self.subscription.connection_state

    @property
    def is_service_unavailable(self) -> bool:
        return self.subscription.connection_state is ConnectionState.UNAVAILABLE

    def subscribe(self, listener: Callable[[LiveMessage], None]) -> Callable[[], None]:
        return self.subscription.subscribe(listener)

    async def start(self) -> None:
        await self.subscription.start()

    def reconnect(self) -> None:
        self.subscription.reconnect()

    def close(self) -> None:
        self.subscription.close()


class CurrentRoundPlayersView:
    """Live participant list for whichever round is current on-chain."""

    def __init__(
        self,
        indexer: IndexerQueryClient,
        transport: LiveTransport,
        reconnect_delay: float = 2.0,
        max_attempts: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._indexer = indexer
        self._transport = transport
        self._reconnect_delay = reconnect_delay
        self._max_attempts = max_attempts
        self._logger = logger or logging.getLogger("raffle.reconcile")
        self._listeners: List[Callable[[LiveMessage], None]] = []
        self._detach: Optional[Callable[[], None]] = None
        self.round_number: Optional[int] = None
        self.subscription: Optional[LiveSubscription[RoundPlayerRow]] = None

    @property
    def players(self) -> List[CurrentRoundPlayer]:
        if self.subscription is None:
            return []
        return [
            CurrentRoundPlayer(address=truncate_address(row.player), entries=row.entry_count)
            for row in self.subscription.rows
        ]

    @property
    def connection_state(self) -> Optional[ConnectionState]:
        return self.subscription.connection_state if self.subscription else None

    def subscribe(self, listener: Callable[[LiveMessage], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_round(self, round_number: Optional[int]) -> None:
        if round_number == self.round_number and self.subscription is not None:
            return
        self.close()
        self.round_number = round_number
        if round_number is None:
            return

        self._logger.info("Watching players of round %s", round_number)
        subscription: LiveSubscription[RoundPlayerRow] = LiveSubscription(
            IndexerQuery.round_players(round_number),
            self._transport,
            parse=_parse_round_players,
            seed=lambda: self._indexer.round_players(round_number),
            reconnect_delay=self._reconnect_delay,
            max_attempts=self._max_attempts,
            name=f"round-{round_number}-players",
        )
        self.subscription = subscription
        self._detach = subscription.subscribe(self._forward)
        await subscription.start()

    def reconnect(self) -> None:
        if self.subscription is not None:
            self.subscription.reconnect()

    def close(self) -> None:
        subscription, self.subscription = self.subscription, None
        if subscription is None:
            return
        subscription.close()
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _forward(self, message: LiveMessage) -> None:
        for listener in list(self._listeners):
            listener(message)


class RaffleSession:
    """Wires contract reads, watched events and live indexer views into one view model."""

    def __init__(
        self,
        settings: ClientSettings,
        reader: ContractReadClient,
        watcher: ContractEventWatcher,
        indexer: IndexerQueryClient,
        transport: LiveTransport,
        transactions: TransactionClient,
        flag_scheduler: Optional[Scheduler] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings
        self._reader = reader
        self._watcher = watcher
        self._logger = logger or logging.getLogger("raffle.reconcile")
        user_address = settings.player_address or transactions.address
        self.user_address = user_address
        self.financials = RoundFinancials(reader, user_address)
        self.announcement = WinnerAnnouncement(user_address)
        self.entry_succeeded = TransientFlag(settings.entry_success_seconds, schedule=flag_scheduler)
        self.recent_winners = RecentWinnersView(
            indexer,
            transport,
            limit=settings.live.recent_winners_limit,
            reconnect_delay=settings.live.reconnect_delay_seconds,
            max_attempts=settings.live.max_retry_attempts,
        )
        self.players = CurrentRoundPlayersView(
            indexer,
            transport,
            reconnect_delay=settings.live.reconnect_delay_seconds,
            max_attempts=settings.live.max_retry_attempts,
        )
        self.transactions = transactions
        self.write_error = DismissableError(transactions)
        self.wrong_network = False
        self._unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "RaffleSession":
        reader = ContractReadClient.from_settings(settings)
        watcher = ContractEventWatcher(
            reader.web3,
            reader.contract,
            poll_interval=settings.watcher.poll_interval_seconds,
            max_consecutive_failures=settings.watcher.max_consecutive_failures,
        )
        indexer = IndexerQueryClient(settings.indexer_url, timeout_seconds=settings.indexer_timeout_seconds)
        transport = SseLiveTransport(settings.indexer_url)
        transactions = TransactionClient(
            reader.web3,
            reader.contract,
            private_key=settings.player_private_key,
            chain_id=settings.chain_id,
        )
        return cls(settings, reader, watcher, indexer, transport, transactions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        try:
            self.wrong_network = not await self._reader.check_network()
        except Exception as exc:
            self._logger.warning("Network check failed: %s", exc)

        self._unsubscribers.append(self._watcher.on_entry_recorded(self.handle_entry_recorded))
        self._unsubscribers.append(self._watcher.on_draw_completed(self.handle_draw_completed))

        await self.financials.load_all()
        self._unsubscribers.append(self.financials.round_number.subscribe(self._on_round_number))
        await self._watcher.start()
        await asyncio.gather(
            self.recent_winners.start(),
            self.players.set_round(self.financials.round_number.value),
        )

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.recent_winners.close()
        self.players.close()
        self.entry_succeeded.clear()
        await self._watcher.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Event reconciliation
    # ------------------------------------------------------------------
    def handle_entry_recorded(self, entry: EntryRecorded) -> None:
        self._logger.info("Entry recorded for %s in round %s", entry.player, entry.round_number)
        self.entry_succeeded.trigger()
        self._spawn(self.financials.on_entry_recorded())

    def handle_draw_completed(self, result: DrawingResult) -> None:
        self._logger.info(
            "Draw completed: round=%s winner=%s prize=%s",
            result.round_number,
            result.winner,
            result.prize_formatted,
        )
        self.announcement.show(result)
        self._spawn(self.financials.on_draw_completed())

    def _on_round_number(self, read: ContractRead) -> None:
        if read.value is None:
            return
        round_number = int(read.value)
        if round_number != self.players.round_number:
            self._spawn(self.players.set_round(round_number))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for refetches triggered by events handled so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------
    async def enter_raffle(self) -> Optional[str]:
        fee = self.financials.entrance_fee.value
        if fee is None:
            fee = await self.financials.entrance_fee.refetch()
        if fee is None:
            self._logger.warning("Entrance fee unavailable; cannot enter")
            return None
        self.write_error.reset()
        return await self.transactions.enter_raffle(int(fee))

    async def claim_prize(self) -> Optional[str]:
        self.write_error.reset()
        tx_hash = await self.transactions.claim_prize()
        if self.transactions.is_success:
            await self.financials.on_prize_claimed()
        return tx_hash

    def dismiss_announcement(self) -> None:
        self.announcement.dismiss()
