from pydantic import BaseModel
from typing import Optional

from ..pipeline.snapshots import MetricsSnapshot

class MetricsResponse(BaseModel):
    data: dict[str, MetricsSnapshot]
    errors: dict[str, str]

class WeeklyPricesRequest(BaseModel):
    league_id: Optional[str] = None
    week_id: Optional[str] = None

class WeeklyPricesResponse(BaseModel):
    ok: bool
    resolved: int
    missing: list[str]
    run_id: str

class WarmTriggered(BaseModel):
    ok: bool
    scheduled: bool
