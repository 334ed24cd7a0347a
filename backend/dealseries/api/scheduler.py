"""API endpoints for triggering scheduler runs by hand."""

from dataclasses import asdict
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from dealseries.dependencies import get_db
from dealseries.schemas.recurring import SchedulerRunResponse, NotificationRunResponse
from dealseries.services.orchestrator import process_due_recurring, process_upcoming_notifications

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.post("/run", response_model=SchedulerRunResponse)
def run_scheduler(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Generate deals for one batch of due series."""
    result = process_due_recurring(db, limit=limit)
    return asdict(result)


@router.post("/notify", response_model=NotificationRunResponse)
def run_notifications(
    hours_ahead: Optional[int] = Query(None, ge=1, le=168),
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Send advance notices for series coming due soon."""
    result = process_upcoming_notifications(db, hours_ahead=hours_ahead, limit=limit)
    return asdict(result)
