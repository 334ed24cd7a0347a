"""
FastAPI dependencies.
"""

from typing import Generator
from fastapi import Header, HTTPException
from sqlalchemy.orm import Session
from dealseries.database import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database sessions.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_team_id(x_team_id: str = Header(None)) -> str:
    """Team scope of the request, taken from the X-Team-Id header."""
    if not x_team_id:
        raise HTTPException(status_code=401, detail="Team context required")
    return x_team_id


def get_user_id(x_user_id: str = Header(None)) -> str:
    """Acting user, taken from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User context required")
    return x_user_id
