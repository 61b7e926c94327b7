from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_db
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.persistence.db import pool_stats
from opsportal.services.telemetry import counters_snapshot, external_call_stats


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, Any]
    external_calls: dict[str, Any]
    counters: dict[str, int]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)


@router.get("/health/ready", response_model=SuccessEnvelope[ReadinessResponse])
async def readiness(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so load balancers can read the details.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_failed", exc_info=exc)
        database = "unavailable"
    payload = ReadinessResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        pool=pool_stats(),
        external_calls=external_call_stats(300),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
