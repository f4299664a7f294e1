from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class EntryRecordedLog:
    round_number: int
    player: str
    tx_hash: str
    log_index: int
    block_number: int


@dataclass(frozen=True)
class DrawCompletedLog:
    round_number: int
    winner: str
    prize: int
    completed_at: int
    tx_hash: str
    log_index: int
    block_number: int


IndexedLog = Union[EntryRecordedLog, DrawCompletedLog]
