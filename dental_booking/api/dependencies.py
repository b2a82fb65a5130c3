"""FastAPI dependencies wiring request sessions to the booking engine."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.core.database import get_db
from dental_booking.scheduling.availability import AvailabilityResolver
from dental_booking.scheduling.booking import BookingService
from dental_booking.scheduling.clinical_rules import ClinicalRuleEngine


async def get_booking_service(db: AsyncSession = Depends(get_db)) -> BookingService:
    return BookingService(db)


async def get_availability(db: AsyncSession = Depends(get_db)) -> AvailabilityResolver:
    return AvailabilityResolver(db)


async def get_rule_engine(db: AsyncSession = Depends(get_db)) -> ClinicalRuleEngine:
    return ClinicalRuleEngine(db)


async def get_performer(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Identity of the staff member acting, recorded in the audit log."""
    return x_user_id
