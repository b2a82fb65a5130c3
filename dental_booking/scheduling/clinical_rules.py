"""Clinical dependency rules between dental services.

Edges are directed ``service -> dependent_service`` rows:

- REQUIRES_PREREQUISITE: *dependent_service* must have been completed before
  *service* can be booked.
- REQUIRES_MIN_DAYS: as above, and at least ``min_days_apart`` days must
  separate its completion from the new booking.
- EXCLUDES_SAME_DAY: the two services cannot be booked together. Stored as a
  pair of mirror rows that are written and removed together.
- BUNDLES_WITH: advisory only, used for suggestions.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.core.models import DentalService, DependencyRuleType, ServiceDependency
from dental_booking.core.repository import (
    AppointmentRepository,
    AuditRepository,
    ServiceDependencyRepository,
    ServiceRepository,
)
from dental_booking.scheduling.errors import ConflictError, InvalidInputError, NotFoundError
from dental_booking.scheduling.models import DependencyRequest, RuleViolation, ServiceSummary

logger = logging.getLogger(__name__)

_UNLOCKING_RULES = (
    DependencyRuleType.REQUIRES_PREREQUISITE.value,
    DependencyRuleType.REQUIRES_MIN_DAYS.value,
)


def _suffix(note: Optional[str]) -> str:
    return f" {note}" if note else ""


class ClinicalRuleEngine:
    """Evaluates and maintains the service dependency graph."""

    def __init__(self, session: Optional[AsyncSession] = None):
        self.session = session

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def evaluate(
        day: date,
        services: Sequence[DentalService],
        edges: Sequence[ServiceDependency],
        completed: dict[uuid.UUID, date],
    ) -> Optional[RuleViolation]:
        """Return the first violated rule for booking *services* together on *day*.

        *completed* maps service id to the patient's latest completion date.
        Exclusions are checked across the whole requested set first, then
        prerequisites, then minimum-day gaps.
        """
        requested = {s.id for s in services}
        by_source: dict[uuid.UUID, list[ServiceDependency]] = {}
        for edge in edges:
            by_source.setdefault(edge.service_id, []).append(edge)

        for service in services:
            for edge in by_source.get(service.id, []):
                if edge.rule_type != DependencyRuleType.EXCLUDES_SAME_DAY.value:
                    continue
                if edge.dependent_service_id in requested:
                    other = edge.dependent_service
                    return RuleViolation(
                        rule_code="CLINICAL_RULE_EXCLUSION_VIOLATED",
                        message=(
                            f"Cannot book '{service.service_name}' and '{other.service_name}' "
                            f"on the same day.{_suffix(edge.receptionist_note)}"
                        ),
                        details={
                            "rule_type": edge.rule_type,
                            "service_code": service.service_code,
                            "dependent_service_code": other.service_code,
                        },
                    )

        for service in services:
            for edge in by_source.get(service.id, []):
                if edge.rule_type != DependencyRuleType.REQUIRES_PREREQUISITE.value:
                    continue
                if edge.dependent_service_id not in completed:
                    prereq = edge.dependent_service
                    return RuleViolation(
                        rule_code="CLINICAL_RULE_PREREQUISITE_NOT_MET",
                        message=(
                            f"Patient has not completed '{prereq.service_name}', "
                            f"required before '{service.service_name}'.{_suffix(edge.receptionist_note)}"
                        ),
                        details={
                            "rule_type": edge.rule_type,
                            "service_code": service.service_code,
                            "prerequisite_service_code": prereq.service_code,
                        },
                    )

        for service in services:
            for edge in by_source.get(service.id, []):
                if edge.rule_type != DependencyRuleType.REQUIRES_MIN_DAYS.value:
                    continue
                prereq = edge.dependent_service
                min_days = edge.min_days_apart or 0
                done_on = completed.get(edge.dependent_service_id)
                details = {
                    "rule_type": edge.rule_type,
                    "service_code": service.service_code,
                    "prerequisite_service_code": prereq.service_code,
                    "min_days_apart": min_days,
                }
                if done_on is None:
                    return RuleViolation(
                        rule_code="CLINICAL_RULE_MIN_DAYS_PREREQUISITE_NOT_MET",
                        message=(
                            f"Patient has not completed '{prereq.service_name}', which must be done "
                            f"at least {min_days} days before '{service.service_name}'."
                            f"{_suffix(edge.receptionist_note)}"
                        ),
                        details=details,
                    )
                gap = (day - done_on).days
                if gap < min_days:
                    return RuleViolation(
                        rule_code="CLINICAL_RULE_MIN_DAYS_NOT_MET",
                        message=(
                            f"'{service.service_name}' requires '{prereq.service_name}' to be completed "
                            f"at least {min_days} days earlier; only {gap} days "
                            f"(completed {done_on.isoformat()}, booking {day.isoformat()})."
                            f"{_suffix(edge.receptionist_note)}"
                        ),
                        details={
                            **details,
                            "completed_date": done_on.isoformat(),
                            "proposed_date": day.isoformat(),
                            "actual_days": gap,
                        },
                    )
        return None

    async def validate(
        self,
        day: date,
        services: Sequence[DentalService],
        patient_id: uuid.UUID,
        completed: Optional[dict[uuid.UUID, date]] = None,
    ) -> Optional[RuleViolation]:
        edges = await ServiceDependencyRepository(self.session).list_for_services([s.id for s in services])
        if not edges:
            return None
        if completed is None:
            completed = await AppointmentRepository(self.session).completed_service_history(patient_id)
        violation = self.evaluate(day, services, edges, completed)
        if violation is not None:
            logger.warning("Clinical rule %s: %s", violation.rule_code, violation.details)
        return violation

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    async def bundle_suggestions(self, service_code: str) -> list[ServiceSummary]:
        """Services linked to *service_code* by BUNDLES_WITH, in either direction."""
        service = await ServiceRepository(self.session).get_by_code(service_code)
        if service is None:
            return []
        edges = await ServiceDependencyRepository(self.session).list_touching(
            service.id, DependencyRuleType.BUNDLES_WITH.value
        )
        seen: dict[uuid.UUID, ServiceSummary] = {}
        for edge in edges:
            other = edge.dependent_service if edge.service_id == service.id else edge.service
            if other.id != service.id and other.id not in seen:
                seen[other.id] = ServiceSummary(service_code=other.service_code, service_name=other.service_name)
        return sorted(seen.values(), key=lambda s: s.service_code)

    async def unlocked_by(self, service_code: str) -> list[ServiceSummary]:
        """Services whose prerequisite or min-days requirement *service_code* satisfies."""
        service = await ServiceRepository(self.session).get_by_code(service_code)
        if service is None:
            raise NotFoundError(f"Service {service_code} not found", "SERVICES_NOT_FOUND", {"service_code": service_code})
        edges = await ServiceDependencyRepository(self.session).list_by_dependent(service.id, _UNLOCKING_RULES)
        seen: dict[uuid.UUID, ServiceSummary] = {}
        for edge in edges:
            seen.setdefault(
                edge.service_id,
                ServiceSummary(service_code=edge.service.service_code, service_name=edge.service.service_name),
            )
        return sorted(seen.values(), key=lambda s: s.service_code)

    async def has_prerequisites(self, service_id: uuid.UUID) -> bool:
        edges = await ServiceDependencyRepository(self.session).list_for_services([service_id])
        return any(e.rule_type in _UNLOCKING_RULES for e in edges)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def add_dependency(self, request: DependencyRequest, performed_by: Optional[str] = None) -> ServiceDependency:
        """Create an edge; EXCLUDES_SAME_DAY also gets its mirror row."""
        services = ServiceRepository(self.session)
        deps = ServiceDependencyRepository(self.session)

        source = await services.get_by_code(request.service_code)
        target = await services.get_by_code(request.dependent_service_code)
        missing = [
            code for code, svc in ((request.service_code, source), (request.dependent_service_code, target))
            if svc is None
        ]
        if missing:
            raise NotFoundError(f"Unknown services: {', '.join(missing)}", "SERVICES_NOT_FOUND", {"service_codes": missing})
        if source.id == target.id:
            raise InvalidInputError("A service cannot depend on itself", "DEPENDENCY_SELF_REFERENCE")

        rule_type = request.rule_type
        if rule_type is DependencyRuleType.REQUIRES_MIN_DAYS:
            if not request.min_days_apart or request.min_days_apart <= 0:
                raise InvalidInputError(
                    "REQUIRES_MIN_DAYS needs min_days_apart greater than zero", "MIN_DAYS_REQUIRED"
                )
        elif request.min_days_apart is not None:
            raise InvalidInputError(
                f"min_days_apart is only allowed for REQUIRES_MIN_DAYS, not {rule_type.value}",
                "MIN_DAYS_NOT_ALLOWED",
            )

        if await deps.find(source.id, target.id, rule_type.value) is not None:
            raise ConflictError(
                f"Dependency {source.service_code} -> {target.service_code} ({rule_type.value}) already exists",
                "DEPENDENCY_EXISTS",
            )

        edge = await deps.create(
            service=source,
            dependent_service=target,
            rule_type=rule_type.value,
            min_days_apart=request.min_days_apart,
            receptionist_note=request.receptionist_note,
        )
        if rule_type is DependencyRuleType.EXCLUDES_SAME_DAY:
            if await deps.find(target.id, source.id, rule_type.value) is None:
                await deps.create(
                    service=target,
                    dependent_service=source,
                    rule_type=rule_type.value,
                    receptionist_note=request.receptionist_note,
                )

        await AuditRepository(self.session).log_action(
            action="create",
            resource_type="service_dependency",
            resource_id=str(edge.id),
            user_id=performed_by,
            details=request.model_dump(mode="json"),
        )
        logger.info("Added dependency %s -> %s (%s)", source.service_code, target.service_code, rule_type.value)
        return edge

    async def remove_dependency(
        self,
        service_code: str,
        dependent_service_code: str,
        rule_type: DependencyRuleType,
        performed_by: Optional[str] = None,
    ) -> int:
        """Delete an edge (and the mirror of an exclusion); returns rows removed."""
        services = ServiceRepository(self.session)
        deps = ServiceDependencyRepository(self.session)
        source = await services.get_by_code(service_code)
        target = await services.get_by_code(dependent_service_code)
        if source is None or target is None:
            raise NotFoundError("Unknown services", "SERVICES_NOT_FOUND",
                                {"service_codes": [service_code, dependent_service_code]})

        removed = await deps.delete_edge(source.id, target.id, rule_type.value)
        if rule_type is DependencyRuleType.EXCLUDES_SAME_DAY:
            removed += await deps.delete_edge(target.id, source.id, rule_type.value)
        if not removed:
            raise NotFoundError(
                f"Dependency {service_code} -> {dependent_service_code} ({rule_type.value}) not found",
                "DEPENDENCY_NOT_FOUND",
            )

        await AuditRepository(self.session).log_action(
            action="delete",
            resource_type="service_dependency",
            resource_id=f"{service_code}:{dependent_service_code}:{rule_type.value}",
            user_id=performed_by,
            details={"rows_removed": removed},
        )
        return removed
