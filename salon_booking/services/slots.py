from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.config import EngineSettings
from salon_booking.core.exceptions import InvalidInterval
from salon_booking.core.redis import SlotCache
from salon_booking.core.retry import RetryPolicy, exponential_backoff
from salon_booking.models.appointment import Appointment
from salon_booking.models.branch import Branch
from salon_booking.models.staff import Staff
from salon_booking.schemas.scheduling import TimeSlot
from salon_booking.services.booking_rules import BookingRuleEngine
from salon_booking.services.ledger import AppointmentLedger
from salon_booking.services.providers import (
    CatalogProvider,
    OverrideProvider,
    StaffScheduleProvider,
    WorkingHoursProvider,
    blackouts,
    extra_openings,
)
from salon_booking.utils.intervals import (
    Interval,
    day_bounds,
    intersect,
    merge,
    utc_to_local,
)

logger = structlog.get_logger(__name__)


@dataclass
class StaffDay:
    """Everything that bounds one staff member's bookable time on one date."""

    staff_id: int
    work: List[Interval] = field(default_factory=list)
    blackouts: List[Interval] = field(default_factory=list)
    occupied: List[Interval] = field(default_factory=list)

    def is_free(self, candidate: Interval) -> bool:
        return not any(candidate.overlaps(busy) for busy in self.occupied) and not any(
            candidate.overlaps(blocked) for blocked in self.blackouts
        )

    def covers(self, candidate: Interval) -> bool:
        return any(window.contains(candidate) for window in self.work)


class SlotGenerator:
    """Turns working hours, schedules, overrides and bookings into time slots."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[AppointmentLedger] = None,
        rules: Optional[BookingRuleEngine] = None,
        settings: Optional[EngineSettings] = None,
        slot_cache: Optional[SlotCache] = None,
        read_policy: Optional[RetryPolicy] = None,
        catalog: Optional[CatalogProvider] = None,
        hours: Optional[WorkingHoursProvider] = None,
        schedules: Optional[StaffScheduleProvider] = None,
        overrides: Optional[OverrideProvider] = None,
    ):
        self.db = db
        self.settings = settings or EngineSettings()
        self.catalog = catalog or CatalogProvider(db)
        self.hours = hours or WorkingHoursProvider(db)
        self.schedules = schedules or StaffScheduleProvider(db)
        self.overrides = overrides or OverrideProvider(db)
        self.ledger = ledger or AppointmentLedger(db, catalog=self.catalog)
        self.rules = rules or BookingRuleEngine(db, catalog=self.catalog)
        self.slot_cache = slot_cache
        self.read_policy = read_policy or RetryPolicy(
            max_attempts=self.settings.read_retry_attempts,
            backoff=exponential_backoff(self.settings.read_retry_backoff_seconds),
        )

    # Windows

    async def branch_windows(self, branch: Branch, day: date) -> List[Interval]:
        """Opening hours plus branch-wide extra openings, in UTC."""
        bounds = day_bounds(day, branch.timezone)
        window = await self.hours.get_window(branch, day)
        branch_overrides = await self.overrides.list_overlapping(bounds, branch_id=branch.id)
        base = [window] if window is not None else []
        return merge(base + extra_openings(branch_overrides, bounds))

    async def staff_day(
        self,
        staff: Staff,
        branch: Branch,
        day: date,
        exclude_appointment_ids: Iterable[int] = (),
        branch_windows: Optional[List[Interval]] = None,
    ) -> StaffDay:
        bounds = day_bounds(day, branch.timezone)
        if branch_windows is None:
            branch_windows = await self.branch_windows(branch, day)

        overrides = await self.overrides.list_overlapping(
            bounds, staff_id=staff.id, branch_id=branch.id
        )
        staff_overrides = [o for o in overrides if o.staff_id == staff.id]
        schedule = await self.schedules.get_window(staff.id, day, branch.timezone)
        base = [schedule] if schedule is not None else []
        staff_windows = merge(base + extra_openings(staff_overrides, bounds))

        booked = await self.ledger.list_active_for_staff(
            staff.id, bounds, exclude_ids=exclude_appointment_ids
        )
        return StaffDay(
            staff_id=staff.id,
            work=intersect(branch_windows, staff_windows),
            blackouts=blackouts(overrides),
            occupied=[a.interval for a in booked],
        )

    # Slot walking

    @staticmethod
    def walk(staff_day: StaffDay, duration_minutes: int, granularity_minutes: int,
             include_unavailable: bool = False) -> List[TimeSlot]:
        step = timedelta(minutes=granularity_minutes)
        length = timedelta(minutes=duration_minutes)
        slots = []
        for window in staff_day.work:
            start = window.start
            while start + length <= window.end:
                candidate = Interval(start, start + length)
                available = staff_day.is_free(candidate)
                if available or include_unavailable:
                    slots.append(
                        TimeSlot(
                            start=candidate.start,
                            end=candidate.end,
                            staff_id=staff_day.staff_id,
                            available=available,
                        )
                    )
                start += step
        return slots

    @staticmethod
    def deduplicate(slots: Iterable[TimeSlot]) -> List[TimeSlot]:
        """One slot per (start, end, staff), available winning; sorted by start."""
        chosen = {}
        for slot in slots:
            current = chosen.get(slot.key)
            if current is None or (slot.available and not current.available):
                chosen[slot.key] = slot
        return sorted(chosen.values(), key=lambda s: (s.start, s.staff_id, s.end))

    async def _candidate_staff(
        self, branch: Branch, service_ids: Sequence[int], staff_id: Optional[int]
    ) -> List[Staff]:
        if staff_id is not None:
            staff = await self.catalog.get_staff(staff_id)
            if staff.branch_id != branch.id or not staff.can_take_bookings:
                return []
            return [staff]
        return await self.catalog.staff_offering(branch.id, service_ids)

    async def _generate(
        self,
        branch: Branch,
        day: date,
        duration_minutes: int,
        staff_members: Sequence[Staff],
        service_ids: Sequence[int],
        granularity_minutes: int,
        include_unavailable: bool,
        exclude_appointment_ids: Iterable[int],
    ) -> Tuple[List[TimeSlot], int]:
        """Slots for every candidate, and how many candidates were skipped.

        Each staff lookup runs in its own savepoint so one failed lookup does
        not poison the transaction for the rest. Lost connections, or every
        candidate failing, are store outages and propagate.
        """
        windows = await self.branch_windows(branch, day)
        if not windows:
            return [], 0

        exclude_appointment_ids = tuple(exclude_appointment_ids)
        slots: List[TimeSlot] = []
        skipped = 0
        last_error: Optional[SQLAlchemyError] = None
        for staff in staff_members:
            staff_id = staff.id
            try:
                async with self.db.begin_nested():
                    staff_day = await self.staff_day(
                        staff, branch, day, exclude_appointment_ids, branch_windows=windows
                    )
            except SQLAlchemyError as e:
                if isinstance(e, DBAPIError) and e.connection_invalidated:
                    raise
                logger.warning(
                    "Skipping staff after schedule lookup failure",
                    staff_id=staff_id,
                    date=day.isoformat(),
                    error=str(e),
                )
                skipped += 1
                last_error = e
                continue
            if not staff_day.work:
                continue
            staff_slots = self.walk(
                staff_day, duration_minutes, granularity_minutes, include_unavailable
            )
            slots.extend(
                await self.rules.filter(staff_slots, branch.id, staff_id, service_ids)
            )
        if last_error is not None and skipped == len(staff_members):
            raise last_error
        return self.deduplicate(slots), skipped

    # Public API

    async def get_available_slots(
        self,
        branch_id: int,
        service_ids: Sequence[int],
        day: date,
        staff_id: Optional[int] = None,
        granularity_minutes: Optional[int] = None,
        include_unavailable: bool = False,
        exclude_appointment_ids: Iterable[int] = (),
    ) -> List[TimeSlot]:
        """
        Compute bookable slots for a branch on a branch-local date.

        Args:
            branch_id: Branch to book at
            service_ids: Services to be performed back to back
            day: Branch-local calendar date
            staff_id: Restrict to one staff member
            granularity_minutes: Step between candidate starts
            include_unavailable: Also return occupied candidates, flagged unavailable
            exclude_appointment_ids: Bookings to treat as free (e.g. the one being moved)

        Returns:
            Slots sorted by start time, then staff id
        """
        granularity = granularity_minutes
        if granularity is None:
            granularity = self.settings.default_granularity_minutes
        if granularity <= 0:
            raise InvalidInterval(f"Granularity must be positive, got {granularity}")
        exclude_appointment_ids = tuple(exclude_appointment_ids)

        query = {
            "services": list(service_ids),
            "staff_id": staff_id,
            "granularity": granularity,
            "include_unavailable": include_unavailable,
        }
        use_cache = self.slot_cache is not None and not exclude_appointment_ids
        if use_cache:
            cached = await self.slot_cache.get(branch_id, day, query)
            if cached is not None:
                return [TimeSlot(**slot) for slot in cached]

        async def compute() -> Tuple[List[TimeSlot], int]:
            branch = await self.catalog.get_branch(branch_id)
            services = await self.catalog.get_services(service_ids)
            duration = sum(service.total_duration_minutes for service in services)
            if duration <= 0:
                raise InvalidInterval("Requested services have no duration")
            staff_members = await self._candidate_staff(branch, service_ids, staff_id)
            if not staff_members:
                return [], 0
            return await self._generate(
                branch,
                day,
                duration,
                staff_members,
                service_ids,
                granularity,
                include_unavailable,
                exclude_appointment_ids,
            )

        slots, skipped = await self.read_policy.run(
            compute, name="get_available_slots", on_retry=self.db.rollback
        )

        # A partial answer is served but never cached
        if use_cache and not skipped:
            await self.slot_cache.set(
                branch_id, day, query, [slot.model_dump(mode="json") for slot in slots]
            )
        logger.debug(
            "Generated slots",
            branch_id=branch_id,
            date=day.isoformat(),
            staff_id=staff_id,
            count=len(slots),
        )
        return slots

    async def is_slot_available(
        self,
        staff_id: int,
        start: datetime,
        duration_minutes: int,
        exclude_appointment_ids: Iterable[int] = (),
    ) -> bool:
        """True when no active appointment of the staff member overlaps."""
        interval = Interval.of(start, duration_minutes)
        await self.catalog.get_staff(staff_id)

        async def check() -> bool:
            clashes = await self.ledger.find_overlapping(
                staff_id, interval.start, interval.end, exclude_ids=exclude_appointment_ids
            )
            return not clashes

        return await self.read_policy.run(check, name="is_slot_available", on_retry=self.db.rollback)

    async def can_take(
        self,
        staff: Staff,
        branch: Branch,
        interval: Interval,
        exclude_appointment_ids: Iterable[int] = (),
    ) -> bool:
        """Scheduled, not blacked out and not booked for the whole interval."""
        if not staff.can_take_bookings or staff.branch_id != branch.id:
            return False
        day = utc_to_local(interval.start, branch.timezone).date()
        staff_day = await self.staff_day(staff, branch, day, exclude_appointment_ids)
        return staff_day.covers(interval) and staff_day.is_free(interval)

    async def find_nearby_slots(
        self, appointment: Appointment, window_minutes: Optional[int] = None
    ) -> List[TimeSlot]:
        """Free slots for the same staff within +/- ``window_minutes``, nearest first."""
        if window_minutes is None:
            window_minutes = self.settings.nearby_window_minutes
        window = timedelta(minutes=window_minutes)
        branch = await self.catalog.get_branch(appointment.branch_id)
        staff = await self.catalog.get_staff(appointment.staff_id)
        day = utc_to_local(appointment.start_datetime, branch.timezone).date()

        slots, _ = await self._generate(
            branch,
            day,
            appointment.total_duration_minutes,
            [staff],
            appointment.service_ids,
            self.settings.default_granularity_minutes,
            False,
            (appointment.id,),
        )
        nearby = [
            slot for slot in slots
            if slot.start != appointment.start_datetime
            and abs(slot.start - appointment.start_datetime) <= window
        ]
        nearby.sort(key=lambda s: (abs(s.start - appointment.start_datetime), s.start))
        return nearby

    async def suggest_alternatives(
        self,
        appointment: Appointment,
        limit: Optional[int] = None,
        search_days: Optional[int] = None,
    ) -> List[TimeSlot]:
        """Nearest free slots for the appointment's services, searching forward day by day.

        Within a day, slots closest to the original time of day come first.
        """
        if limit is None:
            limit = self.settings.alternative_slot_count
        if search_days is None:
            search_days = self.settings.alternative_search_days
        branch = await self.catalog.get_branch(appointment.branch_id)

        service_ids = appointment.service_ids
        if service_ids:
            staff_members = await self.catalog.staff_offering(branch.id, service_ids)
        else:
            staff_members = [await self.catalog.get_staff(appointment.staff_id)]

        local_start = utc_to_local(appointment.start_datetime, branch.timezone)
        preferred = timedelta(hours=local_start.hour, minutes=local_start.minute)

        found: List[TimeSlot] = []
        for offset in range(search_days):
            day = local_start.date() + timedelta(days=offset)
            slots, _ = await self._generate(
                branch,
                day,
                appointment.total_duration_minutes,
                staff_members,
                service_ids,
                self.settings.default_granularity_minutes,
                False,
                (appointment.id,),
            )

            def time_of_day_distance(slot: TimeSlot) -> timedelta:
                local = utc_to_local(slot.start, branch.timezone)
                return abs(timedelta(hours=local.hour, minutes=local.minute) - preferred)

            slots = [
                s for s in slots
                if not (s.start == appointment.start_datetime and s.staff_id == appointment.staff_id)
            ]
            slots.sort(key=lambda s: (time_of_day_distance(s), s.start, s.staff_id))
            found.extend(slots[: limit - len(found)])
            if len(found) >= limit:
                break
        return found
