"""Realtime change-event schemas."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ChangeOperation = Literal["insert", "update", "delete", "resync"]


class ChangeEvent(BaseModel):
    """One row change delivered over a realtime channel.

    ``record`` carries the full new row when the store sends it; ``version``
    is the server-assigned row version used to discard stale deliveries.
    """

    model_config = ConfigDict(frozen=True)

    operation: ChangeOperation
    table: str
    key: dict[str, Any] = Field(default_factory=dict)
    record: dict[str, Any] | None = None
    version: int | None = None
    committed_at: datetime | None = None

    @property
    def entity_id(self) -> Any:
        return self.key.get("id")

    def value(self, column: str) -> Any:
        """Read a column from the record, falling back to the key fields."""
        if self.record is not None and column in self.record:
            return self.record[column]
        return self.key.get(column)
