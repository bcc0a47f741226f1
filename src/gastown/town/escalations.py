"""Severity-graded escalations with automatic re-escalation."""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import SEVERITY_ORDER, Escalation, EscalationSeverity, utcnow_naive
from gastown.errors import NotFoundError
from gastown.schemas import RouteEscalationInput

log = structlog.get_logger()


def bump_severity(severity: EscalationSeverity | str) -> EscalationSeverity:
    """Next severity level, capped at critical."""
    index = SEVERITY_ORDER.index(EscalationSeverity(severity))
    return SEVERITY_ORDER[min(index + 1, len(SEVERITY_ORDER) - 1)]


def notifies_mayor(severity: EscalationSeverity | str) -> bool:
    return EscalationSeverity(severity) != EscalationSeverity.LOW


def escalation_notice(escalation: Escalation, *, re_escalation: bool = False) -> str:
    prefix = "Re-Escalation" if re_escalation else "Escalation"
    rig = escalation.source_rig_id or "town"
    return f"[{prefix}:{escalation.severity}] rig={rig} {escalation.message}"


class EscalationTracker:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def route(self, data: RouteEscalationInput) -> Escalation:
        escalation = Escalation(
            source_rig_id=data.source_rig_id,
            source_agent_id=data.source_agent_id,
            severity=data.severity.value,
            category=data.category,
            message=data.message,
        )
        self.session.add(escalation)
        log.info(
            "escalation_routed",
            escalation_id=escalation.id,
            severity=escalation.severity,
            category=escalation.category,
            rig_id=escalation.source_rig_id,
        )
        return escalation

    async def get(self, escalation_id: str) -> Escalation | None:
        return await self.session.get(Escalation, escalation_id)

    async def acknowledge(self, escalation_id: str) -> Escalation:
        escalation = await self.get(escalation_id)
        if escalation is None:
            raise NotFoundError("Escalation", escalation_id)
        if not escalation.acknowledged:
            escalation.acknowledged = True
            escalation.acknowledged_at = utcnow_naive()
            self.session.add(escalation)
            log.info("escalation_acknowledged", escalation_id=escalation_id)
        return escalation

    async def list(self, *, acknowledged: bool | None = None, limit: int = 100) -> list[Escalation]:
        query = select(Escalation)
        if acknowledged is not None:
            query = query.where(col(Escalation.acknowledged).is_(acknowledged))
        result = await self.session.execute(
            query.order_by(col(Escalation.created_at).desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def age(
        self,
        *,
        threshold: timedelta,
        max_re_escalations: int,
        now: datetime | None = None,
    ) -> list[Escalation]:
        """Bump every unacknowledged escalation that has waited too long.

        An escalation is due once its age reaches ``(count + 1) * threshold``.
        Returns the escalations that were bumped.
        """
        now = now or utcnow_naive()
        result = await self.session.execute(
            select(Escalation)
            .where(col(Escalation.acknowledged).is_(False))
            .where(col(Escalation.re_escalation_count) < max_re_escalations)
        )
        bumped: list[Escalation] = []
        for escalation in result.scalars().all():
            if now - escalation.created_at < threshold * (escalation.re_escalation_count + 1):
                continue
            old = escalation.severity
            escalation.severity = bump_severity(old).value
            escalation.re_escalation_count += 1
            self.session.add(escalation)
            bumped.append(escalation)
            log.info(
                "escalation_bumped",
                escalation_id=escalation.id,
                old=old,
                new=escalation.severity,
                count=escalation.re_escalation_count,
            )
        return bumped
