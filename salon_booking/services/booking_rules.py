from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.models.booking_rule import BookingRule
from salon_booking.models.branch import Branch
from salon_booking.schemas.scheduling import TimeSlot
from salon_booking.services.providers import CatalogProvider
from salon_booking.utils.intervals import Interval, local_window, utc_to_local, utcnow
from salon_booking.utils.specifications import AllOf, AnyOf, Comparator, FieldPredicate

logger = structlog.get_logger(__name__)


class BookingRuleEngine:
    """Policy filters narrowing otherwise-free slots.

    A slot must pass every applicable rule: minimum lead time, maximum advance
    window and the restricted-hours window (branch-local wall clock).
    """

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[CatalogProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog or CatalogProvider(db)
        self.clock = clock

    async def load_rules(self, branch_id: int, staff_ids: Iterable[int]) -> List[BookingRule]:
        """Active rules for the branch or any of the staff, highest priority first."""
        staff_ids = list(staff_ids)
        scope = FieldPredicate("branch_id", Comparator.EQ, branch_id)
        if staff_ids:
            scope = AnyOf(scope, FieldPredicate("staff_id", Comparator.IN, staff_ids))
        spec = AllOf(FieldPredicate("is_active", Comparator.EQ, True), scope)
        result = await self.db.execute(
            select(BookingRule)
            .where(spec.to_clause(BookingRule))
            .order_by(BookingRule.priority.desc(), BookingRule.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def applies(rule: BookingRule, slot: TimeSlot, service_ids, local_day) -> bool:
        if rule.staff_id is not None and rule.staff_id != slot.staff_id:
            return False
        if rule.service_id is not None and rule.service_id not in service_ids:
            return False
        return rule.is_effective_on(local_day)

    def violation(self, rule: BookingRule, slot: TimeSlot, branch: Branch, now: datetime) -> Optional[str]:
        """Name of the first constraint of ``rule`` the slot breaks, if any."""
        if rule.min_advance_hours is not None:
            if slot.start < now + timedelta(hours=rule.min_advance_hours):
                return "min_advance_hours"
        if rule.max_advance_days is not None:
            if slot.start > now + timedelta(days=rule.max_advance_days):
                return "max_advance_days"
        if rule.has_restricted_window:
            local_day = utc_to_local(slot.start, branch.timezone).date()
            window = local_window(
                local_day, rule.restricted_start_time, rule.restricted_end_time, branch.timezone
            )
            if not window.contains(Interval(slot.start, slot.end)):
                return "restricted_hours"
        return None

    async def filter(
        self,
        slots: List[TimeSlot],
        branch_id: int,
        staff_id: Optional[int] = None,
        service_ids: Iterable[int] = (),
    ) -> List[TimeSlot]:
        if not slots:
            return []
        service_ids = set(service_ids)
        branch = await self.catalog.get_branch(branch_id)
        staff_ids = [staff_id] if staff_id is not None else sorted({s.staff_id for s in slots})
        rules = await self.load_rules(branch.id, staff_ids)
        if not rules:
            return slots

        now = self.clock()
        kept = []
        dropped = 0
        for slot in slots:
            local_day = utc_to_local(slot.start, branch.timezone).date()
            for rule in rules:
                if not self.applies(rule, slot, service_ids, local_day):
                    continue
                if self.violation(rule, slot, branch, now):
                    dropped += 1
                    break
            else:
                kept.append(slot)

        if dropped:
            logger.debug(
                "Booking rules filtered slots",
                branch_id=branch.id,
                rules=len(rules),
                dropped=dropped,
                kept=len(kept),
            )
        return kept
