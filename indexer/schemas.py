from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator

# Public (camelCase) column names per table.
TABLE_COLUMNS: Dict[str, Dict[str, str]] = {
    "round": {
        "roundNumber": "round_number",
        "winner": "winner",
        "prizePool": "prize_pool",
        "completedAt": "completed_at",
    },
    "roundPlayer": {
        "roundNumber": "round_number",
        "player": "player",
        "entryCount": "entry_count",
    },
}

# prizePool is stored as a decimal string, so it cannot be ordered numerically.
ORDERABLE_COLUMNS = {"roundNumber", "completedAt", "entryCount"}

MAX_LIMIT = 1000


class QueryRequest(BaseModel):
    table: Literal["round", "roundPlayer"]
    where: Dict[str, Any] = Field(default_factory=dict)
    order_by: Optional[str] = None
    order_direction: Literal["asc", "desc"] = "desc"
    limit: Optional[int] = Field(None, ge=1, le=MAX_LIMIT)

    @model_validator(mode="after")
    def validate_columns(self) -> "QueryRequest":
        columns = TABLE_COLUMNS[self.table]
        unknown = [key for key in self.where if key not in columns]
        if unknown:
            raise ValueError(f"Unknown column(s) for {self.table}: {', '.join(sorted(unknown))}")
        if self.order_by is not None:
            if self.order_by not in columns:
                raise ValueError(f"Unknown order_by column for {self.table}: {self.order_by}")
            if self.order_by not in ORDERABLE_COLUMNS:
                raise ValueError(f"Column {self.order_by} cannot be used for ordering")
        return self


class HealthResponse(BaseModel):
    status: str = "ok"
    last_block: Optional[int] = None
