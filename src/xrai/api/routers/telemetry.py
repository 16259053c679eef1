from __future__ import annotations

from typing import List

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ...services.telemetry_sink import TelemetryEvent, list_recent_events

router = APIRouter(prefix="/telemetry", tags=["telemetry"])


class TelemetryRecentResponse(BaseModel):
    events: List[TelemetryEvent]


@router.get("/events", response_model=TelemetryRecentResponse)
def recent_events(limit: int = Query(50, ge=1, le=200)) -> TelemetryRecentResponse:
    return TelemetryRecentResponse(events=list_recent_events(limit))
