"""Pass Schemas — response models for the pass status and trigger endpoints.

Invariants:
    - Mirrors PassReport / PassStats field-for-field; no amounts are exposed
    - Timestamps are ISO-8601 UTC
"""

from datetime import datetime

from pydantic import BaseModel, Field


class PassReportResponse(BaseModel):
    """One triggered pass."""
    pass_id: str
    outcome: str
    cursor_before: int | None = None
    cursor_after: int | None = None
    payouts: int = 0
    batches: int = 0
    deferred: int = 0
    unmapped_events: int = 0
    error_code: str | None = None
    error_message: str | None = None
    skip_reason: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


class PassStatsResponse(BaseModel):
    committed: int = Field(ge=0)
    noop: int = Field(ge=0)
    aborted: int = Field(ge=0)
    skipped: int = Field(ge=0)
    consecutive_aborts: int = Field(ge=0)
    last_error_code: str | None = None
    last_success_at: datetime | None = None
    last_report: PassReportResponse | None = None


class PassStatusResponse(BaseModel):
    """Operational view: counters, watermark, and outstanding batches."""
    state: str
    running: bool
    latest_cursor: int | None = None
    unresolved_batches: int = Field(ge=0)
    carried_recipients: int = Field(ge=0)
    stats: PassStatsResponse
