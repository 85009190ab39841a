"""
Admin API routes
Manual settlement triggers, competition cancellation and settlement lookup.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID
import logging

from chartvolt.core.config import settings
from chartvolt.core.database import get_session, get_session_factory
from chartvolt.core.exceptions import EntityNotFound, IntegrityViolation
from chartvolt.core.redis import get_redis_client
from chartvolt.core.security import limiter, require_admin_token
from chartvolt.models.competition import (
    CancelCompetitionRequest,
    Competition,
    CompetitionSettlementResponse,
)
from chartvolt.services.competition_settler import get_competition_settler
from chartvolt.services.effects import EffectRunner
from chartvolt.services.prices import PriceSource
from chartvolt.services.scheduler import SettlementScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin_token)])


def get_scheduler(request: Request) -> SettlementScheduler:
    """Scheduler started by the lifespan, or an idle one for manual ticks"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        scheduler = SettlementScheduler(get_session_factory(), get_redis_client())
        request.app.state.scheduler = scheduler
    return scheduler


@router.post("/competitions/{competition_id}/cancel")
@limiter.limit(settings.RATE_LIMIT_ADMIN)
async def cancel_competition(
    request: Request,
    competition_id: UUID,
    body: CancelCompetitionRequest,
    session: AsyncSession = Depends(get_session),
):
    """Cancel a competition and refund every entry fee"""
    redis = get_redis_client()
    settler = get_competition_settler(session, PriceSource(redis), EffectRunner(redis))

    try:
        plan = await settler.cancel_competition(competition_id, body.reason)
    except EntityNotFound:
        raise HTTPException(404, "Competition not found")
    except IntegrityViolation as e:
        logger.critical(f"INTEGRITY VIOLATION cancelling competition {competition_id}: {e}")
        raise HTTPException(409, f"Cancellation blocked: {e}")

    if plan is None:
        raise HTTPException(409, "Competition already completed or cancelled")
    return plan.summary()


@router.get("/competitions/{competition_id}/settlement", response_model=CompetitionSettlementResponse)
async def get_competition_settlement(
    competition_id: UUID,
    session: AsyncSession = Depends(get_session),
):
    """Persisted settlement totals for a competition"""
    competition = await session.get(Competition, competition_id)
    if not competition:
        raise HTTPException(404, "Competition not found")
    return competition


@router.post("/settlement/run")
@limiter.limit(settings.RATE_LIMIT_ADMIN)
async def run_settlement(
    request: Request,
    scheduler: SettlementScheduler = Depends(get_scheduler),
):
    """Run one settlement tick now"""
    return await scheduler.run_settlement_tick()


@router.post("/margin-check/run")
@limiter.limit(settings.RATE_LIMIT_ADMIN)
async def run_margin_check(
    request: Request,
    scheduler: SettlementScheduler = Depends(get_scheduler),
):
    """Run one liquidation sweep now"""
    return await scheduler.run_margin_tick()
