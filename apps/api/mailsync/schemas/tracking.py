from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class TrackingStatsOut(BaseModel):
    message_id: UUID
    total_opens: int
    unique_opens: int
    total_clicks: int
    unique_clicks: int
    first_opened_at: datetime | None
    last_opened_at: datetime | None
    clicks_by_url: dict[str, int]
