"""Reconnecting live-query subscription to the indexer.

The retry policy lives in :class:`SubscriptionMachine`, a plain object whose
transition methods only update fields and report what the caller has to do
(tear the channel down, arm or cancel the retry timer, open a new channel).
:class:`LiveSubscription` is the asyncio driver that owns the channel task and
the timer handle and carries those instructions out.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from .exceptions import QueryError, StreamError
from .schemas import IndexerQuery
from .transport import LiveTransport
from .types import ConnectionState

RECONNECT_DELAY_SECONDS = 2.0
MAX_RETRY_ATTEMPTS = 5

RowT = TypeVar("RowT")


class SubscriptionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Transition:
    previous: SubscriptionState
    state: SubscriptionState
    teardown: bool = False
    schedule_retry: bool = False
    cancel_retry: bool = False
    connect: bool = False
    ignored: bool = False

    @property
    def changed(self) -> bool:
        return self.previous is not self.state


@dataclass
class SubscriptionMachine:
    max_attempts: int = MAX_RETRY_ATTEMPTS
    state: SubscriptionState = SubscriptionState.IDLE
    attempt: int = 0
    manual_close: bool = False
    error: Optional[Exception] = field(default=None, repr=False)

    def _ignored(self) -> Transition:
        return Transition(previous=self.state, state=self.state, ignored=True)

    def _move(self, state: SubscriptionState, **effects: bool) -> Transition:
        previous, self.state = self.state, state
        return Transition(previous=previous, state=state, **effects)

    def start(self) -> Transition:
        """First connection request for this subscription."""

        if self.state is not SubscriptionState.IDLE:
            return self._ignored()
        self.manual_close = False
        self.attempt = 0
        self.error = None
        return self._move(SubscriptionState.CONNECTING, connect=True)

    def connected(self) -> Transition:
        if self.manual_close or self.state is not SubscriptionState.CONNECTING:
            return self._ignored()
        self.attempt = 0
        self.error = None
        return self._move(SubscriptionState.STREAMING)

    def failed(self, error: Exception) -> Transition:
        if self.manual_close or self.state not in (
            SubscriptionState.CONNECTING,
            SubscriptionState.STREAMING,
            SubscriptionState.RECONNECTING,
        ):
            return self._ignored()
        self.attempt += 1
        self.error = error
        if self.attempt > self.max_attempts:
            return self._move(SubscriptionState.UNAVAILABLE, teardown=True, cancel_retry=True)
        return self._move(
            SubscriptionState.RECONNECTING, teardown=True, cancel_retry=True, schedule_retry=True
        )

    def retry_due(self) -> Transition:
        if self.manual_close or self.state is not SubscriptionState.RECONNECTING:
            return self._ignored()
        return self._move(SubscriptionState.CONNECTING, connect=True)

    def reconnect(self) -> Transition:
        """User-requested reconnect, valid from any state."""

        self.manual_close = False
        self.attempt = 0
        return self._move(
            SubscriptionState.CONNECTING, teardown=True, cancel_retry=True, connect=True
        )

    def close(self) -> Transition:
        self.manual_close = True
        return self._move(SubscriptionState.IDLE, teardown=True, cancel_retry=True)

    def accepts_snapshot(self) -> bool:
        return not self.manual_close and self.state is SubscriptionState.STREAMING

    @property
    def connection_state(self) -> ConnectionState:
        if self.state is SubscriptionState.STREAMING:
            return ConnectionState.CONNECTED
        if self.state is SubscriptionState.UNAVAILABLE:
            return ConnectionState.UNAVAILABLE
        if self.state is SubscriptionState.RECONNECTING or self.attempt > 0:
            return ConnectionState.RECONNECTING
        return ConnectionState.CONNECTING


@dataclass(frozen=True)
class RowsChanged(Generic[RowT]):
    rows: Tuple[RowT, ...]
    from_snapshot: bool


@dataclass(frozen=True)
class StateChanged:
    state: SubscriptionState
    connection_state: ConnectionState
    attempt: int
    error: Optional[Exception] = None


LiveMessage = Union[RowsChanged, StateChanged]
Listener = Callable[[LiveMessage], None]


class LiveSubscription(Generic[RowT]):
    """Keeps ``rows`` mirrored from the indexer's live endpoint for one query."""

    def __init__(
        self,
        query: IndexerQuery,
        transport: LiveTransport,
        parse: Callable[[Sequence[Any]], List[RowT]],
        seed: Optional[Callable[[], Awaitable[List[RowT]]]] = None,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        name: str = "live",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.query = query
        self.name = name
        self.machine = SubscriptionMachine(max_attempts=max_attempts)
        self._transport = transport
        self._parse = parse
        self._seed = seed
        self._reconnect_delay = reconnect_delay
        self._logger = logger or logging.getLogger("raffle.live")
        self._rows: Tuple[RowT, ...] = ()
        self._has_snapshot = False
        self._is_seeding = False
        self._closed = False
        self._channel_id = 0
        self._task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------
    @property
    def rows(self) -> Tuple[RowT, ...]:
        return self._rows

    @property
    def has_snapshot(self) -> bool:
        return self._has_snapshot

    @property
    def is_loading(self) -> bool:
        return self._is_seeding and not self._rows

    @property
    def state(self) -> SubscriptionState:
        return self.machine.state

    @property
    def connection_state(self) -> ConnectionState:
        return self.machine.connection_state

    @property
    def error(self) -> Optional[Exception]:
        return self.machine.error

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Load the one-shot seed, then open the live channel."""

        self._closed = False
        if self._seed is not None:
            self._is_seeding = True
            try:
                seeded = await self._seed()
            except QueryError as exc:
                self._logger.warning("[%s] initial query failed: %s", self.name, exc.message)
            else:
                self.apply_seed(seeded)
            finally:
                self._is_seeding = False
        if self._closed:
            return
        self._apply(self.machine.start())

    def apply_seed(self, rows: Sequence[RowT]) -> bool:
        """Show one-shot rows unless a live snapshot (or earlier seed) is already held."""

        if self._has_snapshot or self._rows or not rows:
            return False
        self._rows = tuple(rows)
        self._emit(RowsChanged(rows=self._rows, from_snapshot=False))
        return True

    def reconnect(self) -> None:
        self._logger.info("[%s] manual reconnect requested", self.name)
        self._closed = False
        self._apply(self.machine.reconnect())

    def close(self) -> None:
        """Tear the subscription down; late callbacks from the old channel are ignored."""

        self._closed = True
        self._apply(self.machine.close())

    async def aclose(self) -> None:
        task = self._task
        self.close()
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Transition effects
    # ------------------------------------------------------------------
    def _apply(self, transition: Transition) -> None:
        if transition.ignored:
            return
        if transition.cancel_retry and self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        if transition.teardown:
            self._teardown()
        if transition.schedule_retry:
            loop = asyncio.get_running_loop()
            self._retry_handle = loop.call_later(self._reconnect_delay, self._on_retry_due)
        if transition.connect:
            self._open_channel()
        if transition.changed or transition.state is SubscriptionState.CONNECTING:
            self._emit(
                StateChanged(
                    state=self.machine.state,
                    connection_state=self.machine.connection_state,
                    attempt=self.machine.attempt,
                    error=self.machine.error,
                )
            )

    def _teardown(self) -> None:
        # Bumping the id first makes any callback still queued by the old channel stale.
        self._channel_id += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _open_channel(self) -> None:
        self._channel_id += 1
        channel_id = self._channel_id
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._consume(channel_id))

    def _on_retry_due(self) -> None:
        self._retry_handle = None
        self._apply(self.machine.retry_due())

    # ------------------------------------------------------------------
    # Channel callbacks
    # ------------------------------------------------------------------
    async def _consume(self, channel_id: int) -> None:
        try:
            async for raw_rows in self._transport.stream(
                self.query, lambda: self._on_open(channel_id)
            ):
                if channel_id != self._channel_id:
                    return
                self._on_snapshot(raw_rows)
        except asyncio.CancelledError:
            raise
        except StreamError as exc:
            self._on_error(channel_id, exc)
        except Exception as exc:
            self._on_error(
                channel_id,
                StreamError(f"Unexpected stream failure: {exc}", details={"exception": repr(exc)}),
            )

    def _on_open(self, channel_id: int) -> None:
        if channel_id != self._channel_id:
            return
        transition = self.machine.connected()
        if not transition.ignored:
            self._logger.info("[%s] live channel established", self.name)
        self._apply(transition)

    def _on_snapshot(self, raw_rows: Sequence[Any]) -> None:
        if self.machine.state is SubscriptionState.CONNECTING:
            self._apply(self.machine.connected())
        if not self.machine.accepts_snapshot():
            return
        self._rows = tuple(self._parse(raw_rows))
        self._has_snapshot = True
        self._emit(RowsChanged(rows=self._rows, from_snapshot=True))

    def _on_error(self, channel_id: int, error: StreamError) -> None:
        if channel_id != self._channel_id:
            self._logger.debug("[%s] ignoring error from stale channel: %s", self.name, error)
            return
        transition = self.machine.failed(error)
        if transition.ignored:
            return
        if transition.state is SubscriptionState.UNAVAILABLE:
            self._logger.error(
                "[%s] live service unavailable after %s attempts: %s",
                self.name,
                self.machine.attempt,
                error,
            )
        else:
            self._logger.warning(
                "[%s] live channel error (attempt %s/%s), retrying in %ss: %s",
                self.name,
                self.machine.attempt,
                self.machine.max_attempts,
                self._reconnect_delay,
                error,
            )
        self._apply(transition)

    def _emit(self, message: LiveMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                self._logger.exception("[%s] listener %r failed", self.name, listener)
