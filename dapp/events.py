from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from web3 import Web3
from web3.contract import Contract

from .abi import EVENT_SIGNATURES
from .types import ZERO_ADDRESS, DrawingResult, EntryRecorded
from .utils import format_ether

EntryHandler = Callable[[EntryRecorded], None]
DrawHandler = Callable[[DrawingResult], None]

_SEEN_CAPACITY = 1024


def _topic_hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value).lower()


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and Web3.is_address(value)


def has_log_position(raw: Mapping[str, Any]) -> bool:
    """True when a raw log carries integer-like blockNumber and logIndex fields."""

    for field in ("blockNumber", "logIndex"):
        value = raw.get(field)
        if value is None or isinstance(value, bool):
            return False
        try:
            int(value)
        except (TypeError, ValueError):
            return False
    return True


def parse_entry_recorded(args: Mapping[str, Any], block_number: int = 0, log_index: int = 0) -> Optional[EntryRecorded]:
    round_number = args.get("roundNumber")
    player = args.get("player")
    if not _is_uint(round_number) or not _is_address(player):
        return None
    return EntryRecorded(
        round_number=round_number,
        player=Web3.to_checksum_address(player),
        block_number=block_number,
        log_index=log_index,
    )


def parse_draw_completed(args: Mapping[str, Any]) -> Optional[DrawingResult]:
    """Build a DrawingResult only when every expected argument is present and well typed."""

    round_number = args.get("roundNumber")
    winner = args.get("winner")
    prize = args.get("prize")
    if not _is_uint(round_number) or not _is_address(winner) or not _is_uint(prize):
        return None
    if winner.lower() != ZERO_ADDRESS and prize == 0:
        return None
    return DrawingResult(
        round_number=round_number,
        winner=Web3.to_checksum_address(winner),
        prize=prize,
        prize_formatted=format_ether(prize),
    )


class ContractEventWatcher:
    """Polls ``eth_getLogs`` for EntryRecorded and DrawCompleted and fans them out.

    Logs are delivered in (block, log index) order and each at most once.
    Transient RPC errors are retried on the next tick without moving the block
    cursor; a head read that fails in ``start()`` is retried the same way. After ``max_consecutive_failures`` the watcher stops; it resumes from
    the chain head if started again, so logs emitted in between are not replayed.
    """

    def __init__(
        self,
        web3: Web3,
        contract: Contract,
        poll_interval: float = 2.0,
        max_consecutive_failures: int = 10,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._web3 = web3
        self._contract = contract
        self._address = Web3.to_checksum_address(contract.address)
        self._poll_interval = poll_interval
        self._max_failures = max_consecutive_failures
        self._logger = logger or logging.getLogger("raffle.events")
        self._topics: Dict[str, str] = {
            _topic_hex(Web3.keccak(text=signature)): name
            for name, signature in EVENT_SIGNATURES.items()
        }
        self._entry_handlers: List[EntryHandler] = []
        self._draw_handlers: List[DrawHandler] = []
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._from_block: Optional[int] = None
        self._failures = 0
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------
    def on_entry_recorded(self, handler: EntryHandler) -> Callable[[], None]:
        return self._register(self._entry_handlers, handler)

    def on_draw_completed(self, handler: DrawHandler) -> Callable[[], None]:
        return self._register(self._draw_handlers, handler)

    @staticmethod
    def _register(handlers: list, handler) -> Callable[[], None]:
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def from_block(self) -> Optional[int]:
        return self._from_block

    async def start(self) -> None:
        if self.is_running:
            return
        self._from_block = None
        self._failures = 0
        try:
            await self._resolve_start_block()
        except Exception as exc:
            self._failures = 1
            self._logger.warning(
                "Could not read chain head for %s (%s/%s): %s",
                self._address,
                self._failures,
                self._max_failures,
                exc,
            )
        self._task = asyncio.create_task(self._run())

    async def _resolve_start_block(self) -> None:
        head = await asyncio.to_thread(lambda: int(self._web3.eth.block_number))
        self._from_block = head + 1
        self._logger.info(
            "Watching %s from block %s (poll interval=%ss)",
            self._address,
            self._from_block,
            self._poll_interval,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                if self._from_block is None:
                    await self._resolve_start_block()
                else:
                    await self.poll_once()
                self._failures = 0
            except Exception as exc:
                self._failures += 1
                if self._failures >= self._max_failures:
                    self._logger.error(
                        "Event watcher giving up after %s consecutive failures: %s",
                        self._failures,
                        exc,
                    )
                    return
                self._logger.warning(
                    "Event poll failed (%s/%s): %s", self._failures, self._max_failures, exc
                )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def poll_once(self) -> int:
        """Fetch and dispatch logs up to the current head. Returns the number delivered."""

        if self._from_block is None:
            raise RuntimeError("Event watcher not started")
        head = await asyncio.to_thread(lambda: int(self._web3.eth.block_number))
        if self._from_block > head:
            return 0

        params = {
            "fromBlock": self._from_block,
            "toBlock": head,
            "address": self._address,
            "topics": [list(self._topics.keys())],
        }
        raw_logs = await asyncio.to_thread(self._web3.eth.get_logs, params)
        delivered = self._dispatch(raw_logs)
        self._from_block = head + 1
        return delivered

    def _dispatch(self, raw_logs: Iterable[Mapping[str, Any]]) -> int:
        positioned = []
        for raw in raw_logs:
            if has_log_position(raw) and raw.get("blockHash") is not None:
                positioned.append(raw)
            else:
                self._logger.debug("Dropping log without block position: %s", dict(raw))
        ordered = sorted(positioned, key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))
        delivered = 0
        for raw in ordered:
            key = self._unique_key(raw)
            if key in self._seen:
                continue
            self._remember(key)
            if self._handle_log(raw):
                delivered += 1
        return delivered

    def _handle_log(self, raw: Mapping[str, Any]) -> bool:
        topics = raw.get("topics") or []
        if not topics:
            return False
        event_name = self._topics.get(_topic_hex(topics[0]))
        if event_name is None:
            return False

        try:
            decoded = getattr(self._contract.events, event_name)().process_log(raw)
        except Exception as exc:
            self._logger.debug("Dropping undecodable %s log: %s", event_name, exc)
            return False
        args = decoded["args"]

        if event_name == "EntryRecorded":
            entry = parse_entry_recorded(args, int(raw["blockNumber"]), int(raw["logIndex"]))
            if entry is None:
                self._logger.debug("Dropping malformed EntryRecorded log: %s", dict(args))
                return False
            self._emit(self._entry_handlers, entry)
            return True

        result = parse_draw_completed(args)
        if result is None:
            self._logger.debug("Dropping malformed DrawCompleted log: %s", dict(args))
            return False
        self._emit(self._draw_handlers, result)
        return True

    def _emit(self, handlers: list, message: Any) -> None:
        for handler in list(handlers):
            try:
                handler(message)
            except Exception:
                self._logger.exception("Event handler %r failed", handler)

    @staticmethod
    def _unique_key(raw: Mapping[str, Any]) -> str:
        return f"{_topic_hex(raw['blockHash'])}-{int(raw['logIndex'])}"

    def _remember(self, key: str) -> None:
        self._seen[key] = None
        while len(self._seen) > _SEEN_CAPACITY:
            self._seen.popitem(last=False)
