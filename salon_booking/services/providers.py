"""Thin read adapters over the schedule store and the service catalog."""

from datetime import date
from typing import Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.exceptions import NotFound
from salon_booking.models.availability_override import AvailabilityOverride
from salon_booking.models.branch import Branch
from salon_booking.models.customer import Customer
from salon_booking.models.service import Service
from salon_booking.models.staff import Staff
from salon_booking.models.staff_schedule import StaffSchedule
from salon_booking.models.staff_service import StaffService
from salon_booking.models.working_hours import WorkingHours
from salon_booking.services.holidays import HolidayService
from salon_booking.utils.intervals import Interval, local_window, merge
from salon_booking.utils.specifications import (
    AllOf,
    AnyOf,
    Comparator,
    FieldPredicate,
    overlapping,
)

logger = structlog.get_logger(__name__)

ACTIVE = FieldPredicate("is_active", Comparator.EQ, True)


class CatalogProvider:
    """Lookups of branches, staff, services and customers by id."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_branch(self, branch_id: int) -> Branch:
        branch = await self.db.get(Branch, branch_id)
        if branch is None:
            raise NotFound("Branch", branch_id)
        return branch

    async def get_staff(self, staff_id: int) -> Staff:
        staff = await self.db.get(Staff, staff_id)
        if staff is None:
            raise NotFound("Staff", staff_id)
        return staff

    async def get_customer(self, customer_id: int) -> Customer:
        customer = await self.db.get(Customer, customer_id)
        if customer is None:
            raise NotFound("Customer", customer_id)
        return customer

    async def get_services(self, service_ids: Sequence[int]) -> List[Service]:
        """Active services in the requested order; any unknown id raises NotFound."""
        wanted = list(dict.fromkeys(service_ids))
        if not wanted:
            return []
        spec = AllOf(FieldPredicate("id", Comparator.IN, wanted), ACTIVE)
        result = await self.db.execute(select(Service).where(spec.to_clause(Service)))
        by_id = {service.id: service for service in result.scalars().all()}
        for service_id in wanted:
            if service_id not in by_id:
                raise NotFound("Service", service_id)
        return [by_id[service_id] for service_id in service_ids]

    async def staff_offering(
        self,
        branch_id: int,
        service_ids: Iterable[int],
        exclude_staff_ids: Iterable[int] = (),
    ) -> List[Staff]:
        """Active, bookable staff of a branch offering every requested service."""
        wanted = set(service_ids)
        spec = AllOf(
            FieldPredicate("branch_id", Comparator.EQ, branch_id),
            FieldPredicate("is_active", Comparator.EQ, True),
            FieldPredicate("is_bookable", Comparator.EQ, True),
        )
        excluded = list(exclude_staff_ids)
        if excluded:
            spec = spec & FieldPredicate("id", Comparator.NOT_IN, excluded)
        query = select(Staff).where(spec.to_clause(Staff)).order_by(Staff.id)

        if wanted:
            offered = (
                select(StaffService.staff_id)
                .where(
                    AllOf(
                        FieldPredicate("service_id", Comparator.IN, list(wanted)),
                        FieldPredicate("is_available", Comparator.EQ, True),
                    ).to_clause(StaffService)
                )
                .group_by(StaffService.staff_id)
                .having(func.count(func.distinct(StaffService.service_id)) == len(wanted))
            )
            query = query.where(Staff.id.in_(offered))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def sibling_branches(self, branch: Branch) -> List[Branch]:
        """Other active branches of the same salon."""
        if branch.salon_id is None:
            return []
        spec = AllOf(
            FieldPredicate("salon_id", Comparator.EQ, branch.salon_id),
            FieldPredicate("id", Comparator.NE, branch.id),
            ACTIVE,
        )
        result = await self.db.execute(
            select(Branch).where(spec.to_clause(Branch)).order_by(Branch.id)
        )
        return list(result.scalars().all())


class WorkingHoursProvider:
    """Per-branch, per-weekday opening hours."""

    def __init__(self, db: AsyncSession, holiday_service=HolidayService):
        self.db = db
        self.holidays = holiday_service

    async def get_hours(self, branch_id: int, weekday: int) -> Optional[WorkingHours]:
        spec = AllOf(
            FieldPredicate("branch_id", Comparator.EQ, branch_id),
            FieldPredicate("weekday", Comparator.EQ, weekday),
        )
        result = await self.db.execute(
            select(WorkingHours).where(spec.to_clause(WorkingHours))
        )
        return result.scalar_one_or_none()

    async def get_window(self, branch: Branch, day: date) -> Optional[Interval]:
        """The branch's opening window on ``day`` in UTC; None when closed."""
        if self.holidays.is_holiday(branch.holiday_country, day):
            logger.info(
                "Branch closed for public holiday",
                branch_id=branch.id,
                date=day.isoformat(),
                holiday=self.holidays.get_holiday_name(branch.holiday_country, day),
            )
            return None

        hours = await self.get_hours(branch.id, day.weekday())
        if hours is None or not hours.is_open:
            return None
        return local_window(day, hours.open_time, hours.close_time, branch.timezone)


class StaffScheduleProvider:
    """Per-staff, per-date working windows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_schedule(self, staff_id: int, day: date) -> Optional[StaffSchedule]:
        spec = AllOf(
            FieldPredicate("staff_id", Comparator.EQ, staff_id),
            FieldPredicate("date", Comparator.EQ, day),
        )
        result = await self.db.execute(
            select(StaffSchedule).where(spec.to_clause(StaffSchedule))
        )
        return result.scalar_one_or_none()

    async def get_window(self, staff_id: int, day: date, tz_name: str) -> Optional[Interval]:
        schedule = await self.get_schedule(staff_id, day)
        if schedule is None or not schedule.is_available:
            return None
        return local_window(day, schedule.start_time, schedule.end_time, tz_name)


class OverrideProvider:
    """Availability exceptions intersecting a period."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_overlapping(
        self, period: Interval, staff_id: Optional[int] = None, branch_id: Optional[int] = None
    ) -> List[AvailabilityOverride]:
        """Active overrides for the staff member and for the whole branch."""
        scopes = []
        if staff_id is not None:
            scopes.append(FieldPredicate("staff_id", Comparator.EQ, staff_id))
        if branch_id is not None:
            scopes.append(
                AllOf(
                    FieldPredicate("branch_id", Comparator.EQ, branch_id),
                    FieldPredicate("staff_id", Comparator.IS_NULL),
                )
            )
        if not scopes:
            return []

        spec = AllOf(ACTIVE, AnyOf(*scopes), overlapping(period.start, period.end))
        result = await self.db.execute(
            select(AvailabilityOverride)
            .where(spec.to_clause(AvailabilityOverride))
            .order_by(AvailabilityOverride.start_datetime)
        )
        return list(result.scalars().all())


def extra_openings(overrides: Iterable[AvailabilityOverride], period: Interval) -> List[Interval]:
    """Extra-open override intervals clipped to ``period``."""
    pieces = []
    for override in overrides:
        if override.is_available:
            piece = override.interval.intersection(period)
            if piece is not None:
                pieces.append(piece)
    return merge(pieces)


def blackouts(overrides: Iterable[AvailabilityOverride]) -> List[Interval]:
    return [override.interval for override in overrides if override.is_blackout]
