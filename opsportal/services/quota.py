from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.config import get_settings
from opsportal.core.errors import NotFoundError, QuotaExceededError, ValidationError
from opsportal.domain.events import DomainEvent, QuotaThresholdCrossed, UsageReset
from opsportal.domain.models import ClientService
from opsportal.domain.state import ResetPeriod
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import entitlements as entitlements_repo
from opsportal.persistence.repos import usage as usage_repo
from opsportal.services.events import publish


logger = logging.getLogger(__name__)

THRESHOLD_WARNING = "warning"
THRESHOLD_LIMIT = "limit"


@dataclass(frozen=True)
class UsageSnapshot:
    # Read-side view of one entitlement's counter; limit None means unlimited.
    tenant_id: str
    service_id: str
    consumed: int
    limit: int | None
    reset_period: str
    remaining: int | None
    percent_used: float | None
    warning: bool
    at_limit: bool
    over_limit: bool


@dataclass(frozen=True)
class UsageRecordResult:
    snapshot: UsageSnapshot
    # Thresholds this particular event crossed; at most one caller ever sees each crossing.
    crossed: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResetSummary:
    checked: int
    reset: int


def _utc_now() -> datetime:
    # Use UTC for consistent rollover period boundaries.
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def _week_start(now: datetime) -> datetime:
    # ISO weeks start on Monday.
    return _day_start(now) - timedelta(days=now.weekday())


def _month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def period_start(reset_period: str, now: datetime) -> datetime | None:
    # Start of the period containing ``now``; None for counters that never reset.
    now = _as_utc(now)
    if reset_period == ResetPeriod.DAILY.value:
        return _day_start(now)
    if reset_period == ResetPeriod.WEEKLY.value:
        return _week_start(now)
    if reset_period == ResetPeriod.MONTHLY.value:
        return _month_start(now)
    return None


def effective_limit(limit: int | None) -> int | None:
    # Null and zero limits both mean unlimited.
    if limit is None or limit <= 0:
        return None
    return limit


def build_snapshot(
    *,
    tenant_id: str,
    service_id: str,
    consumed: int,
    limit: int | None,
    reset_period: str,
    warning_ratio: float,
) -> UsageSnapshot:
    resolved = effective_limit(limit)
    if resolved is None:
        return UsageSnapshot(
            tenant_id=tenant_id,
            service_id=service_id,
            consumed=consumed,
            limit=None,
            reset_period=reset_period,
            remaining=None,
            percent_used=None,
            warning=False,
            at_limit=False,
            over_limit=False,
        )
    return UsageSnapshot(
        tenant_id=tenant_id,
        service_id=service_id,
        consumed=consumed,
        limit=resolved,
        reset_period=reset_period,
        remaining=max(resolved - consumed, 0),
        percent_used=round(consumed * 100.0 / resolved, 2),
        warning=consumed >= resolved * warning_ratio,
        at_limit=consumed >= resolved,
        over_limit=consumed > resolved,
    )


def crossed_thresholds(previous: int, current: int, limit: int | None, warning_ratio: float) -> tuple[str, ...]:
    """Thresholds crossed by moving the counter from ``previous`` to ``current``.

    Crossing the hard limit supersedes the warning, so a single jump past
    both reports only the limit.
    """
    resolved = effective_limit(limit)
    if resolved is None or current <= previous:
        return ()
    if previous < resolved <= current:
        return (THRESHOLD_LIMIT,)
    warn_at = resolved * warning_ratio
    if previous < warn_at <= current:
        return (THRESHOLD_WARNING,)
    return ()


def enforce_quota_gate(snapshot: UsageSnapshot) -> None:
    # For collaborators about to start new usage; the ledger itself never blocks recording.
    if snapshot.at_limit:
        raise QuotaExceededError(
            "Usage limit reached for this service",
            details={
                "service_id": snapshot.service_id,
                "limit": snapshot.limit,
                "consumed": snapshot.consumed,
                "reset_period": snapshot.reset_period,
            },
        )


def _unit_cost(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        cost = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError("Invalid unit cost", field_errors={"unit_cost": "Must be a number"}) from exc
    if cost < 0:
        raise ValidationError("Invalid unit cost", field_errors={"unit_cost": "Must not be negative"})
    return cost


class QuotaLedger:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now

    def _ratio(self) -> float:
        ratio = get_settings().quota_warning_ratio
        return ratio if 0 < ratio <= 1 else 0.8

    async def record_usage(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        service_id: str,
        quantity: int,
        unit_cost: Any = None,
        source: str | None = None,
    ) -> UsageRecordResult:
        """Append a usage event and atomically bump the entitlement counter.

        The event is always recorded, even past the limit; the returned
        snapshot flags warning, at-limit and over-limit states.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Invalid quantity", field_errors={"quantity": "Must be a positive integer"})
        cost = _unit_cost(unit_cost)
        now = self._time_provider()

        # Write first: the UPDATE takes the row lock before anything else in this transaction.
        row = await usage_repo.increment_consumed(
            session, tenant_id=tenant_id, service_id=service_id, quantity=quantity
        )
        if row is None:
            await session.rollback()
            raise NotFoundError(
                "No entitlement for this service", details={"tenant_id": tenant_id, "service_id": service_id}
            )
        usage_repo.append_event(
            session,
            tenant_id=tenant_id,
            service_id=service_id,
            quantity=quantity,
            unit_cost=cost,
            source=source,
            occurred_at=now,
        )
        await session.commit()

        consumed = int(row.usage_consumed)
        ratio = self._ratio()
        snapshot = build_snapshot(
            tenant_id=tenant_id,
            service_id=service_id,
            consumed=consumed,
            limit=row.usage_limit,
            reset_period=row.reset_period,
            warning_ratio=ratio,
        )
        crossed = crossed_thresholds(consumed - quantity, consumed, row.usage_limit, ratio)
        if snapshot.over_limit:
            logger.warning(
                "usage_over_limit tenant_id=%s service_id=%s consumed=%s limit=%s",
                tenant_id,
                service_id,
                consumed,
                snapshot.limit,
            )
        if crossed:
            service = await catalog_repo.get_service(session, service_id)
            for threshold in crossed:
                await publish(
                    QuotaThresholdCrossed(
                        tenant_id=tenant_id,
                        service_id=service_id,
                        service_name=service.name if service else service_id,
                        threshold=threshold,
                        consumed=consumed,
                        limit=snapshot.limit or 0,
                    )
                )
        return UsageRecordResult(snapshot=snapshot, crossed=crossed)

    async def current_usage(self, session: AsyncSession, *, tenant_id: str, service_id: str) -> UsageSnapshot:
        entitlement = await entitlements_repo.get_entitlement(session, tenant_id=tenant_id, service_id=service_id)
        if entitlement is None:
            raise NotFoundError(
                "No entitlement for this service", details={"tenant_id": tenant_id, "service_id": service_id}
            )
        return self.snapshot_for(entitlement)

    def snapshot_for(self, entitlement: ClientService) -> UsageSnapshot:
        return build_snapshot(
            tenant_id=entitlement.tenant_id,
            service_id=entitlement.service_id,
            consumed=int(entitlement.usage_consumed or 0),
            limit=entitlement.usage_limit,
            reset_period=entitlement.reset_period,
            warning_ratio=self._ratio(),
        )

    async def check_quota(self, session: AsyncSession, *, tenant_id: str, service_id: str) -> UsageSnapshot:
        snapshot = await self.current_usage(session, tenant_id=tenant_id, service_id=service_id)
        enforce_quota_gate(snapshot)
        return snapshot

    async def reset_due_usage(self, session: AsyncSession, *, now: datetime | None = None) -> ResetSummary:
        """Zero every counter whose reset period has rolled over since its last reset.

        Only counters change; usage_events rows are kept for reporting.
        """
        current = _as_utc(now or self._time_provider())
        candidates = await usage_repo.list_resettable(session)
        pending_events: list[DomainEvent] = []
        for entitlement in candidates:
            start = period_start(entitlement.reset_period, current)
            if start is None:
                continue
            last = _as_utc(entitlement.last_reset_at)
            if last is not None and last >= start:
                continue
            previous = int(entitlement.usage_consumed or 0)
            await usage_repo.reset_counter(session, entitlement_id=entitlement.id, reset_at=current)
            pending_events.append(
                UsageReset(
                    tenant_id=entitlement.tenant_id,
                    service_id=entitlement.service_id,
                    reset_period=entitlement.reset_period,
                    previous_consumed=previous,
                )
            )
        await session.commit()
        logger.info("usage_rollover_finished checked=%s reset=%s", len(candidates), len(pending_events))
        for event in pending_events:
            await publish(event)
        return ResetSummary(checked=len(candidates), reset=len(pending_events))


_quota_ledger: QuotaLedger | None = None


def get_quota_ledger() -> QuotaLedger:
    # Cache the ledger for reuse across requests.
    global _quota_ledger
    if _quota_ledger is None:
        _quota_ledger = QuotaLedger()
    return _quota_ledger


def reset_quota_ledger() -> None:
    # Reset cached ledger for deterministic tests.
    global _quota_ledger
    _quota_ledger = None


async def record_usage(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_id: str,
    quantity: int,
    unit_cost: Any = None,
    source: str | None = None,
) -> UsageRecordResult:
    return await get_quota_ledger().record_usage(
        session,
        tenant_id=tenant_id,
        service_id=service_id,
        quantity=quantity,
        unit_cost=unit_cost,
        source=source,
    )


async def current_usage(session: AsyncSession, *, tenant_id: str, service_id: str) -> UsageSnapshot:
    return await get_quota_ledger().current_usage(session, tenant_id=tenant_id, service_id=service_id)


async def reset_due_usage(session: AsyncSession, *, now: datetime | None = None) -> ResetSummary:
    return await get_quota_ledger().reset_due_usage(session, now=now)
