"""FastAPI dependencies."""

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from restock.config import settings
from restock.db.session import get_db
from restock.worker.runner import PredictionRunner, prediction_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_runner() -> PredictionRunner:
    """Dependency for the prediction runner."""
    return prediction_runner


async def require_cron_secret(
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Dependency to require the scheduler's shared secret.

    Expects "Authorization: Bearer <CRON_SECRET>". Fails closed: with no
    secret configured, every request is refused.

    Raises:
        HTTPException: 503 if the secret is not configured, 401 if the
            header is missing or does not match
    """
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server misconfiguration: CRON_SECRET not set",
        )

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
