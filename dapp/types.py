from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

ZERO_ADDRESS = "0x" + "0" * 40


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class EntryRecorded:
    round_number: int
    player: str
    block_number: int
    log_index: int


@dataclass(frozen=True)
class DrawingResult:
    round_number: int
    winner: str
    prize: int
    prize_formatted: str

    @property
    def is_void(self) -> bool:
        return self.winner.lower() == ZERO_ADDRESS


@dataclass(frozen=True)
class RoundRow:
    """A completed round as exposed by the indexer."""

    round_number: int
    winner: Optional[str]
    prize_pool: int
    completed_at: int

    @property
    def is_voided(self) -> bool:
        return self.winner is None


@dataclass(frozen=True)
class RoundPlayerRow:
    round_number: int
    player: str
    entry_count: int


@dataclass(frozen=True)
class RecentWinner:
    round_number: int
    address: str
    prize: str
    time: str


@dataclass(frozen=True)
class CurrentRoundPlayer:
    address: str
    entries: int


@dataclass(frozen=True)
class TimeRemaining:
    hours: int
    minutes: int
    seconds: int

    @property
    def is_zero(self) -> bool:
        return self.hours == 0 and self.minutes == 0 and self.seconds == 0
