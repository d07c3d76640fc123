from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.exceptions import (
    BookingEngineError,
    NotFound,
    SlotUnavailable,
)
from salon_booking.core.redis import SlotCache
from salon_booking.models.appointment import (
    RELEASED_STATUSES,
    Appointment,
    AppointmentStatus,
)
from salon_booking.models.appointment_item import AppointmentServiceItem
from salon_booking.schemas.appointment import AppointmentCreate
from salon_booking.services.providers import CatalogProvider
from salon_booking.utils.intervals import Interval, utc_to_local, utcnow
from salon_booking.utils.specifications import (
    AllOf,
    Comparator,
    FieldPredicate,
    Specification,
    overlapping,
)

logger = structlog.get_logger(__name__)

ACTIVE_APPOINTMENT = FieldPredicate("status", Comparator.NOT_IN, list(RELEASED_STATUSES))

# SQLSTATE for serialization failures under SERIALIZABLE isolation
SERIALIZATION_FAILURE = "40001"


class InvalidStatusTransition(BookingEngineError):
    """The appointment's lifecycle does not allow the requested status."""


def _is_serialization_failure(error: DBAPIError) -> bool:
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return code == SERIALIZATION_FAILURE


class AppointmentLedger:
    """Source of truth for bookings.

    Mutating helpers (``apply_update``, ``apply_cancel``) only flush; the caller
    owns the transaction. The public write operations commit, and every
    committed write bumps the slot cache for the branch-local dates it touched.
    """

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[CatalogProvider] = None,
        slot_cache: Optional[SlotCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog or CatalogProvider(db)
        self.slot_cache = slot_cache
        self.clock = clock
        self._touched: Set[Tuple[int, date]] = set()

    # Reads

    async def get(self, appointment_id: int) -> Appointment:
        """Fetch fresh state, service items included.

        Always hits the store so objects expired by a rolled back transaction
        come back fully loaded.
        """
        result = await self.db.execute(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .execution_options(populate_existing=True)
        )
        appointment = result.scalar_one_or_none()
        if appointment is None:
            raise NotFound("Appointment", appointment_id)
        return appointment

    async def get_by_idempotency_key(self, key: str) -> Optional[Appointment]:
        result = await self.db.execute(
            select(Appointment).where(Appointment.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def find(self, spec: Specification) -> List[Appointment]:
        result = await self.db.execute(
            select(Appointment)
            .where(spec.to_clause(Appointment))
            .order_by(Appointment.start_datetime, Appointment.id)
        )
        return list(result.scalars().all())

    async def find_overlapping(
        self,
        staff_id: int,
        start: datetime,
        end: datetime,
        exclude_ids: Iterable[int] = (),
    ) -> List[Appointment]:
        """Active appointments of a staff member overlapping ``[start, end)``."""
        spec = AllOf(
            FieldPredicate("staff_id", Comparator.EQ, staff_id),
            ACTIVE_APPOINTMENT,
            overlapping(start, end),
        )
        excluded = [i for i in exclude_ids if i is not None]
        if excluded:
            spec = spec & FieldPredicate("id", Comparator.NOT_IN, excluded)
        return await self.find(spec)

    async def list_active_for_staff(
        self, staff_id: int, period: Interval, exclude_ids: Iterable[int] = ()
    ) -> List[Appointment]:
        return await self.find_overlapping(staff_id, period.start, period.end, exclude_ids)

    # Writes

    async def create(self, data: AppointmentCreate) -> Appointment:
        """Book an appointment inside one transaction.

        The overlap re-check runs in the same transaction as the insert; a hit,
        or a serialization failure at commit, raises SlotUnavailable and nothing
        is written. A replayed idempotency key returns the existing booking.
        """
        if data.idempotency_key:
            existing = await self.get_by_idempotency_key(data.idempotency_key)
            if existing is not None:
                logger.info(
                    "Idempotent replay of appointment creation",
                    appointment_id=existing.id,
                    idempotency_key=data.idempotency_key,
                )
                return existing

        branch = await self.catalog.get_branch(data.branch_id)
        staff = await self.catalog.get_staff(data.staff_id)
        await self.catalog.get_customer(data.customer_id)
        services = await self.catalog.get_services(data.service_ids)
        if staff.branch_id != branch.id:
            raise NotFound("Staff", f"{staff.id} at branch {branch.id}")

        total_minutes = sum(service.total_duration_minutes for service in services)
        interval = Interval.of(data.start_datetime, total_minutes)

        if not data.allow_overlap:
            clashes = await self.find_overlapping(staff.id, interval.start, interval.end)
            if clashes:
                raise SlotUnavailable(staff.id, interval.start, interval.end, clashes[0].id)

        appointment = Appointment(
            branch_id=branch.id,
            staff_id=staff.id,
            customer_id=data.customer_id,
            start_datetime=interval.start,
            end_datetime=interval.end,
            total_duration_minutes=total_minutes,
            status=AppointmentStatus.PENDING.value,
            idempotency_key=data.idempotency_key,
            customer_notes=data.customer_notes,
            internal_notes=data.internal_notes,
            service_items=[
                AppointmentServiceItem(
                    service_id=service.id,
                    staff_id=staff.id,
                    service_name=service.name,
                    price=service.price,
                    duration_minutes=service.total_duration_minutes,
                    sequence=index,
                )
                for index, service in enumerate(services)
            ],
        )
        self.db.add(appointment)

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if data.idempotency_key:
                existing = await self.get_by_idempotency_key(data.idempotency_key)
                if existing is not None:
                    return existing
            raise
        except DBAPIError as e:
            await self.db.rollback()
            if _is_serialization_failure(e):
                raise SlotUnavailable(data.staff_id, interval.start, interval.end) from e
            raise

        logger.info(
            "Appointment created",
            appointment_id=appointment.id,
            staff_id=staff.id,
            start=appointment.start_datetime.isoformat(),
            duration_minutes=total_minutes,
        )
        self._touch(branch.id, branch.timezone, appointment.start_datetime)
        await self.flush_invalidations()
        return appointment

    async def apply_update(
        self,
        appointment: Appointment,
        *,
        start: Optional[datetime] = None,
        staff_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        duration_minutes: Optional[int] = None,
        enforce_availability: bool = True,
    ) -> Appointment:
        """Move or reassign an appointment without committing."""
        if not appointment.is_active or appointment.is_terminal:
            raise InvalidStatusTransition(
                f"Appointment {appointment.id} is {appointment.status} and cannot change"
            )

        new_start = start or appointment.start_datetime
        new_staff_id = staff_id or appointment.staff_id
        new_branch_id = branch_id or appointment.branch_id
        minutes = duration_minutes or appointment.total_duration_minutes
        interval = Interval.of(new_start, minutes)

        if new_staff_id != appointment.staff_id:
            staff = await self.catalog.get_staff(new_staff_id)
            if staff.branch_id != new_branch_id:
                raise NotFound("Staff", f"{staff.id} at branch {new_branch_id}")

        if enforce_availability:
            clashes = await self.find_overlapping(
                new_staff_id, interval.start, interval.end, exclude_ids=(appointment.id,)
            )
            if clashes:
                raise SlotUnavailable(new_staff_id, interval.start, interval.end, clashes[0].id)

        old_branch = await self.catalog.get_branch(appointment.branch_id)
        new_branch = (
            old_branch if new_branch_id == old_branch.id
            else await self.catalog.get_branch(new_branch_id)
        )
        self._touch(old_branch.id, old_branch.timezone, appointment.start_datetime)

        time_changed = new_start != appointment.start_datetime
        if new_staff_id != appointment.staff_id:
            for item in appointment.service_items:
                if item.staff_id in (None, appointment.staff_id):
                    item.staff_id = new_staff_id
            appointment.staff_id = new_staff_id
        appointment.branch_id = new_branch_id
        appointment.move_to(new_start, minutes)
        if time_changed:
            appointment.transition_to(AppointmentStatus.RESCHEDULED)

        self._touch(new_branch.id, new_branch.timezone, appointment.start_datetime)
        await self.db.flush()
        return appointment

    async def apply_cancel(self, appointment: Appointment, reason: Optional[str] = None) -> Appointment:
        """Soft-delete: the row stays, its status becomes CANCELLED."""
        if not appointment.transition_to(AppointmentStatus.CANCELLED, notes=reason):
            raise InvalidStatusTransition(
                f"Cannot cancel appointment {appointment.id} in status {appointment.status}"
            )
        branch = await self.catalog.get_branch(appointment.branch_id)
        self._touch(branch.id, branch.timezone, appointment.start_datetime)
        await self.db.flush()
        return appointment

    async def reschedule(
        self,
        appointment_id: int,
        new_start: datetime,
        staff_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        appointment = await self.get(appointment_id)
        target_staff_id = staff_id or appointment.staff_id
        minutes = appointment.total_duration_minutes
        try:
            await self.apply_update(appointment, start=new_start, staff_id=staff_id)
            if reason:
                appointment.reschedule_reason = reason
            await self.db.commit()
        except DBAPIError as e:
            await self.db.rollback()
            self._touched.clear()
            if _is_serialization_failure(e):
                raise SlotUnavailable(
                    target_staff_id, new_start, new_start + timedelta(minutes=minutes)
                ) from e
            raise
        except BookingEngineError:
            # Raised before any attribute was changed
            self._touched.clear()
            raise

        logger.info(
            "Appointment rescheduled",
            appointment_id=appointment.id,
            staff_id=appointment.staff_id,
            start=appointment.start_datetime.isoformat(),
            reschedule_count=appointment.reschedule_count,
        )
        await self.flush_invalidations()
        return appointment

    async def transition_status(
        self, appointment_id: int, new_status: AppointmentStatus, notes: Optional[str] = None
    ) -> Appointment:
        appointment = await self.get(appointment_id)
        if new_status == AppointmentStatus.CANCELLED:
            await self.apply_cancel(appointment, reason=notes)
        elif not appointment.transition_to(new_status, notes=notes):
            raise InvalidStatusTransition(
                f"Cannot transition appointment {appointment.id} "
                f"from {appointment.status} to {new_status.value}"
            )
        await self.db.commit()
        await self.flush_invalidations()
        return appointment

    async def cancel(self, appointment_id: int, reason: Optional[str] = None) -> Appointment:
        return await self.transition_status(appointment_id, AppointmentStatus.CANCELLED, reason)

    # Slot cache

    def _touch(self, branch_id: int, tz_name: str, moment: datetime) -> None:
        self._touched.add((branch_id, utc_to_local(moment, tz_name).date()))

    def discard_invalidations(self) -> None:
        self._touched.clear()

    async def flush_invalidations(self) -> None:
        """Bump the slot cache for every (branch, date) written since last flush."""
        touched, self._touched = self._touched, set()
        if self.slot_cache is None:
            return
        for branch_id, day in sorted(touched):
            await self.slot_cache.invalidate(branch_id, day)
