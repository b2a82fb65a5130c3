"""Service dependency endpoints: bundles, unlocks and rule maintenance."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from dental_booking.api.dependencies import get_performer, get_rule_engine
from dental_booking.core.models import DependencyRuleType
from dental_booking.scheduling.clinical_rules import ClinicalRuleEngine
from dental_booking.scheduling.models import DependencyRequest, DependencyResponse, ServiceSummary

router = APIRouter(prefix="/services")


@router.get("/{service_code}/bundles", response_model=list[ServiceSummary])
async def bundle_suggestions(
    service_code: str,
    engine: ClinicalRuleEngine = Depends(get_rule_engine),
) -> list[ServiceSummary]:
    """Services commonly booked together with *service_code*."""
    return await engine.bundle_suggestions(service_code)


@router.get("/{service_code}/unlocked-by", response_model=list[ServiceSummary])
async def unlocked_by(
    service_code: str,
    engine: ClinicalRuleEngine = Depends(get_rule_engine),
) -> list[ServiceSummary]:
    """Services whose prerequisite is satisfied once *service_code* is completed."""
    return await engine.unlocked_by(service_code)


@router.post("/dependencies", response_model=DependencyResponse, status_code=201)
async def add_dependency(
    body: DependencyRequest,
    performer: Optional[str] = Depends(get_performer),
    engine: ClinicalRuleEngine = Depends(get_rule_engine),
) -> DependencyResponse:
    await engine.add_dependency(body, performed_by=performer)
    return DependencyResponse(
        service_code=body.service_code,
        dependent_service_code=body.dependent_service_code,
        rule_type=body.rule_type,
        min_days_apart=body.min_days_apart,
        receptionist_note=body.receptionist_note,
    )


@router.delete("/dependencies")
async def remove_dependency(
    service_code: str = Query(...),
    dependent_service_code: str = Query(...),
    rule_type: DependencyRuleType = Query(...),
    performer: Optional[str] = Depends(get_performer),
    engine: ClinicalRuleEngine = Depends(get_rule_engine),
) -> dict:
    removed = await engine.remove_dependency(
        service_code, dependent_service_code, rule_type, performed_by=performer
    )
    return {"removed": removed}
