"""
Main API router.
"""

from fastapi import APIRouter
from dealseries.api import deal_recurring, scheduler

api_router = APIRouter()

api_router.include_router(deal_recurring.router)
api_router.include_router(deal_recurring.deals_router)
api_router.include_router(scheduler.router)
