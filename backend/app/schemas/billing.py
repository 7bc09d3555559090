"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from ..billing import ReconciliationSummary


class ReconciliationErrorItem(BaseModel):
    user_id: str = Field(alias="userId")
    error: str

    model_config = ConfigDict(populate_by_name=True)


class ReconciliationSummaryResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int = 0
    errors: List[ReconciliationErrorItem] = Field(default_factory=list)
    started_at: datetime = Field(alias="startedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: ReconciliationSummary) -> "ReconciliationSummaryResponse":
        return cls(
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            errors=[
                ReconciliationErrorItem(user_id=item.user_id, error=item.error)
                for item in summary.errors
            ],
            started_at=summary.started_at,
        )


__all__ = ["ReconciliationErrorItem", "ReconciliationSummaryResponse"]
