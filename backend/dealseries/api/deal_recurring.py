"""API endpoints for recurring deal series."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from dealseries.dependencies import get_db, get_team_id, get_user_id
from dealseries.errors import RecurringNotFoundError, RecurringValidationError
from dealseries.models.recurring import RecurringStatus
from dealseries.schemas.recurring import (
    DealRecurringCreate,
    DealRecurringUpdate,
    DealRecurringResponse,
    DealRecurringList,
    DealRecurringInfo,
    PageMeta,
    UpcomingDealItem,
    UpcomingDealsResponse,
    UpcomingSummaryResponse,
)
from dealseries.services import recurring_store
from dealseries.services.recurring_store import CreateRecurringParams

router = APIRouter(prefix="/deal-recurring", tags=["deal-recurring"])


def _not_found(e: RecurringNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.post("", response_model=DealRecurringResponse)
def create_deal_recurring(
    data: DealRecurringCreate,
    team_id: str = Depends(get_team_id),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db)
):
    """Create a recurring deal series."""
    params = CreateRecurringParams(team_id=team_id, user_id=user_id, **data.model_dump())
    try:
        return recurring_store.create_recurring(db, params)
    except RecurringNotFoundError as e:
        raise _not_found(e)
    except RecurringValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("", response_model=DealRecurringList)
def list_deal_recurring(
    status: Optional[List[RecurringStatus]] = Query(None),
    merchant_id: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    page_size: int = Query(25, ge=1, le=100),
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    """List the team's recurring series, newest first."""
    page = recurring_store.list_recurring(
        db,
        team_id,
        status=status,
        merchant_id=merchant_id,
        cursor=cursor,
        page_size=page_size
    )
    return DealRecurringList(
        meta=PageMeta(
            cursor=page.cursor,
            has_previous_page=page.has_previous_page,
            has_next_page=page.has_next_page,
        ),
        data=[DealRecurringResponse.model_validate(r) for r in page.data],
    )


@router.get("/{recurring_id}", response_model=DealRecurringResponse)
def get_deal_recurring(
    recurring_id: str,
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    try:
        return recurring_store.get_recurring(db, recurring_id, team_id)
    except RecurringNotFoundError as e:
        raise _not_found(e)


@router.patch("/{recurring_id}", response_model=DealRecurringResponse)
def update_deal_recurring(
    recurring_id: str,
    update: DealRecurringUpdate,
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    """Update a series. Changing the cadence of an active series reschedules it."""
    try:
        return recurring_store.update_recurring(
            db, recurring_id, team_id, update.model_dump(exclude_unset=True)
        )
    except RecurringNotFoundError as e:
        raise _not_found(e)
    except RecurringValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{recurring_id}", response_model=DealRecurringResponse)
def cancel_deal_recurring(
    recurring_id: str,
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    """Cancel a series (generated deals are kept)."""
    try:
        return recurring_store.cancel_recurring(db, recurring_id, team_id)
    except RecurringNotFoundError as e:
        raise _not_found(e)


@router.post("/{recurring_id}/pause", response_model=DealRecurringResponse)
def pause_deal_recurring(
    recurring_id: str,
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    try:
        return recurring_store.pause_recurring(db, recurring_id, team_id)
    except RecurringNotFoundError as e:
        raise _not_found(e)
    except RecurringValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{recurring_id}/resume", response_model=DealRecurringResponse)
def resume_deal_recurring(
    recurring_id: str,
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    """Resume a paused series. May complete it instead if its end condition passed."""
    try:
        return recurring_store.resume_recurring(db, recurring_id, team_id)
    except RecurringNotFoundError as e:
        raise _not_found(e)
    except RecurringValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{recurring_id}/upcoming", response_model=UpcomingDealsResponse)
def get_upcoming_deals(
    recurring_id: str,
    limit: int = Query(10, ge=1, le=100),
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    """Preview the next deals of a series."""
    try:
        preview = recurring_store.get_upcoming_deals(db, recurring_id, team_id, limit=limit)
    except RecurringNotFoundError as e:
        raise _not_found(e)

    summary = preview.summary()
    return UpcomingDealsResponse(
        deals=[UpcomingDealItem(date=item.date, amount=item.amount) for item in preview],
        summary=UpcomingSummaryResponse(
            has_end_date=summary.has_end_date,
            total_count=summary.total_count,
            total_amount=summary.total_amount,
            currency=summary.currency,
        ),
    )


deals_router = APIRouter(prefix="/deals", tags=["deals"])


@deals_router.get("/{deal_id}/recurring-info", response_model=DealRecurringInfo)
def get_deal_recurring_info(
    deal_id: str,
    team_id: str = Depends(get_team_id),
    db: Session = Depends(get_db)
):
    """Series details for a generated deal."""
    info = recurring_store.get_recurring_info_for_deal(db, deal_id, team_id)
    if not info:
        raise HTTPException(status_code=404, detail="Deal is not part of a recurring series")
    return info
