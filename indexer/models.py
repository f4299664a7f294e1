from __future__ import annotations

import datetime as dt

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Round(Base):
    __tablename__ = "rounds"

    round_number = Column(BigInteger, primary_key=True, autoincrement=False)
    # NULL marks a voided round (the draw reported the zero address).
    winner = Column(String(42), nullable=True)
    prize_pool = Column(String(78), nullable=False, default="0")
    completed_at = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "roundNumber": str(self.round_number),
            "winner": self.winner,
            "prizePool": str(self.prize_pool),
            "completedAt": str(self.completed_at),
        }


class RoundPlayer(Base):
    __tablename__ = "round_players"
    __table_args__ = (UniqueConstraint("round_number", "player", name="uq_round_player"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    round_number = Column(BigInteger, nullable=False, index=True)
    player = Column(String(42), nullable=False)
    entry_count = Column(Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "roundNumber": str(self.round_number),
            "player": self.player,
            "entryCount": str(self.entry_count),
        }


class ProcessedLog(Base):
    __tablename__ = "processed_logs"

    tx_hash = Column(String(66), primary_key=True)
    log_index = Column(Integer, primary_key=True, autoincrement=False)
    block_number = Column(BigInteger, nullable=False)
    event_name = Column(String(32), nullable=False)


class IndexerState(Base):
    __tablename__ = "indexer_state"

    id = Column(Integer, primary_key=True, default=1)
    last_block = Column(BigInteger, nullable=True)
    version = Column(Integer, nullable=False, default=0)
