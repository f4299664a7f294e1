from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import asc, desc, select
from sqlalchemy.orm import Session
from web3 import Web3

from ..db import session_scope
from ..models import IndexerState, ProcessedLog, Round, RoundPlayer
from ..schemas import TABLE_COLUMNS, QueryRequest
from ..types import DrawCompletedLog, EntryRecordedLog, IndexedLog

ZERO_ADDRESS = "0x" + "0" * 40

_MODELS = {"round": Round, "roundPlayer": RoundPlayer}
_INTEGER_COLUMNS = {"round_number", "completed_at", "entry_count"}
_ADDRESS_COLUMNS = {"winner", "player"}


def _normalise_where_value(column: str, value):
    if value is None:
        return None
    if column in _INTEGER_COLUMNS:
        return int(str(value))
    if column in _ADDRESS_COLUMNS:
        if not Web3.is_address(value):
            raise ValueError(f"Invalid address filter: {value}")
        return Web3.to_checksum_address(value)
    return value


class RoundRepository:
    """Store for indexed rounds and per-round entry counts.

    Every committed change bumps ``IndexerState.version`` so the live endpoint
    can tell when a fresh snapshot is due.
    """

    def _ensure_state(self, session: Session) -> IndexerState:
        state = session.get(IndexerState, 1)
        if state is None:
            state = IndexerState(id=1, last_block=None, version=0)
            session.add(state)
            session.flush()
        return state

    def ensure_state(self) -> None:
        with session_scope() as session:
            self._ensure_state(session)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def apply_logs(self, logs: Iterable[IndexedLog], last_block: Optional[int] = None) -> int:
        """Apply a batch of logs in one transaction. Returns how many were new."""

        applied = 0
        with session_scope() as session:
            state = self._ensure_state(session)
            for log in logs:
                if self._apply_log(session, log):
                    applied += 1
            if applied:
                state.version += 1
            if last_block is not None and (state.last_block is None or last_block > state.last_block):
                state.last_block = last_block
        return applied

    def _apply_log(self, session: Session, log: IndexedLog) -> bool:
        if session.get(ProcessedLog, (log.tx_hash, log.log_index)) is not None:
            return False
        event_name = "EntryRecorded" if isinstance(log, EntryRecordedLog) else "DrawCompleted"
        session.add(
            ProcessedLog(
                tx_hash=log.tx_hash,
                log_index=log.log_index,
                block_number=log.block_number,
                event_name=event_name,
            )
        )
        if isinstance(log, EntryRecordedLog):
            self._record_entry(session, log)
        else:
            self._record_draw(session, log)
        session.flush()
        return True

    @staticmethod
    def _record_entry(session: Session, log: EntryRecordedLog) -> None:
        player = Web3.to_checksum_address(log.player)
        row = session.execute(
            select(RoundPlayer).where(
                RoundPlayer.round_number == log.round_number,
                RoundPlayer.player == player,
            )
        ).scalar_one_or_none()
        if row is None:
            row = RoundPlayer(round_number=log.round_number, player=player, entry_count=0)
            session.add(row)
        row.entry_count += 1

    @staticmethod
    def _record_draw(session: Session, log: DrawCompletedLog) -> None:
        winner = None if log.winner.lower() == ZERO_ADDRESS else Web3.to_checksum_address(log.winner)
        row = session.get(Round, log.round_number)
        if row is None:
            row = Round(round_number=log.round_number)
            session.add(row)
        row.winner = winner
        row.prize_pool = str(int(log.prize))
        row.completed_at = int(log.completed_at)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query(self, request: QueryRequest) -> List[dict]:
        model = _MODELS[request.table]
        columns = TABLE_COLUMNS[request.table]
        stmt = select(model)
        for key, value in request.where.items():
            column_name = columns[key]
            column = getattr(model, column_name)
            normalised = _normalise_where_value(column_name, value)
            stmt = stmt.where(column.is_(None) if normalised is None else column == normalised)
        if request.order_by is not None:
            column = getattr(model, columns[request.order_by])
            direction = desc if request.order_direction == "desc" else asc
            stmt = stmt.order_by(direction(column))
        if request.limit is not None:
            stmt = stmt.limit(request.limit)

        with session_scope() as session:
            return [row.to_dict() for row in session.execute(stmt).scalars()]

    def get_version(self) -> int:
        with session_scope() as session:
            return self._ensure_state(session).version

    def get_last_block(self) -> Optional[int]:
        with session_scope() as session:
            return self._ensure_state(session).last_block
