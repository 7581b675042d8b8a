"""Generation records: what each spent credit paid for."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation import GENERATION_STATUSES, Generation
from services.ledger import commit_or_raise, isoformat_utc
from services.spend_gate import CreditSpendGate, SpendResult

logger = logging.getLogger(__name__)


def serialize_generation(generation: Generation) -> Dict[str, Any]:
    return {
        "id": generation.id,
        "user_id": generation.user_id,
        "original_image_url": generation.original_image_url,
        "generated_image_url": generation.generated_image_url or None,
        "status": generation.status,
        "credits_used": generation.credits_used,
        "created_at": isoformat_utc(generation.created_at),
    }


async def start_generation(
    db: AsyncSession,
    gate: CreditSpendGate,
    user_id: str,
    image_url: str,
    cost: int,
) -> Tuple[SpendResult, str]:
    """Spend credits and record a pending generation in the same commit."""
    generation = Generation(
        id=str(uuid.uuid4()),
        user_id=user_id,
        original_image_url=image_url,
        generated_image_url="",
        status="pending",
        credits_used=cost,
        created_at=datetime.now(timezone.utc),
    )
    spend = await gate.try_spend(db, user_id, cost, attach=[generation])
    return spend, generation.id


async def finish_generation(
    db: AsyncSession,
    generation_id: str,
    *,
    status: str,
    generated_image_url: Optional[str] = None,
) -> None:
    if status not in GENERATION_STATUSES or status == "pending":
        raise ValueError(f"Unknown final generation status: {status}")

    values: Dict[str, Any] = {"status": status}
    if generated_image_url:
        values["generated_image_url"] = generated_image_url
    await db.execute(
        update(Generation)
        .where(Generation.id == generation_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await commit_or_raise(db)
    logger.info("generation_finished id=%s status=%s", generation_id, status)


async def list_generations(db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Generation)
        .where(Generation.user_id == user_id)
        .order_by(Generation.created_at.desc(), Generation.id.desc())
    )
    return [serialize_generation(generation) for generation in result.scalars().all()]
