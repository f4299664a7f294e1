from __future__ import annotations

from typing import Any, Iterable, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from .types import ZERO_ADDRESS, RoundPlayerRow, RoundRow


class IndexerQuery(BaseModel):
    """Structured query understood by the indexer's query and live endpoints."""

    table: Literal["round", "roundPlayer"]
    where: dict[str, Any] = Field(default_factory=dict)
    order_by: Optional[str] = None
    order_direction: Literal["asc", "desc"] = "desc"
    limit: Optional[int] = Field(None, ge=1)

    @classmethod
    def recent_rounds(cls, limit: int) -> "IndexerQuery":
        return cls(table="round", order_by="roundNumber", order_direction="desc", limit=limit)

    @classmethod
    def round_players(cls, round_number: int) -> "IndexerQuery":
        return cls(
            table="roundPlayer",
            where={"roundNumber": str(round_number)},
            order_by="entryCount",
            order_direction="desc",
        )


class RoundRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    round_number: int = Field(..., alias="roundNumber", ge=0)
    winner: Optional[str] = None
    prize_pool: int = Field(..., alias="prizePool", ge=0)
    completed_at: int = Field(..., alias="completedAt", ge=0)

    @field_validator("winner")
    @classmethod
    def validate_winner(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not Web3.is_address(value):
            raise ValueError("winner must be a 20-byte hex address")
        if value.lower() == ZERO_ADDRESS:
            return None
        return value

    def to_row(self) -> RoundRow:
        return RoundRow(
            round_number=self.round_number,
            winner=self.winner,
            prize_pool=self.prize_pool,
            completed_at=self.completed_at,
        )


class RoundPlayerRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    round_number: int = Field(..., alias="roundNumber", ge=0)
    player: str
    entry_count: int = Field(..., alias="entryCount", ge=1)

    @field_validator("player")
    @classmethod
    def validate_player(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError("player must be a 20-byte hex address")
        return value

    def to_row(self) -> RoundPlayerRow:
        return RoundPlayerRow(
            round_number=self.round_number,
            player=self.player,
            entry_count=self.entry_count,
        )


RecordT = TypeVar("RecordT", RoundRecord, RoundPlayerRecord)


def parse_rows(raw_rows: Iterable[Any], model: Type[RecordT]) -> List[RecordT]:
    """Validate rows one by one, dropping the ones that do not fit ``model``."""

    records: List[RecordT] = []
    for raw in raw_rows:
        if not isinstance(raw, dict):
            continue
        try:
            records.append(model.model_validate(raw))
        except ValidationError:
            continue
    return records
