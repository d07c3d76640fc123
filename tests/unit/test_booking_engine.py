import pytest
from sqlalchemy import select

from salon_booking.core.exceptions import SlotUnavailable
from salon_booking.models.conflict import BookingConflict, ConflictStatus
from salon_booking.schemas.appointment import AppointmentCreate
from tests.fixtures.booking_fixtures import at


def booking(branch, staff, customer, service, start, **kwargs):
    return AppointmentCreate(
        branch_id=branch.id,
        staff_id=staff.id,
        customer_id=customer.id,
        service_ids=[service.id],
        start_datetime=start,
        **kwargs,
    )


async def all_conflicts(db):
    return (await db.execute(select(BookingConflict))).scalars().all()


class TestBookingEngine:
    @pytest.mark.asyncio
    async def test_clean_booking_records_no_conflict(
        self, db, booking_engine, branch, alice, customer, color_service
    ):
        appointment = await booking_engine.create_appointment(
            booking(branch, alice, customer, color_service, at(10))
        )

        assert appointment.staff_id == alice.id
        assert await all_conflicts(db) == []

    @pytest.mark.asyncio
    async def test_taken_slot_is_rejected(
        self, booking_engine, branch, alice, customer, color_service
    ):
        await booking_engine.create_appointment(booking(branch, alice, customer, color_service, at(10)))

        with pytest.raises(SlotUnavailable):
            await booking_engine.create_appointment(
                booking(branch, alice, customer, color_service, at(11))
            )

    @pytest.mark.asyncio
    async def test_override_booking_leaves_pending_conflict(
        self, db, booking_engine, dispatcher, branch, alice, bob, customer, color_service
    ):
        await booking_engine.create_appointment(booking(branch, alice, customer, color_service, at(10)))
        second = await booking_engine.create_appointment(
            booking(branch, alice, customer, color_service, at(10), allow_overlap=True)
        )

        conflicts = await all_conflicts(db)
        assert len(conflicts) == 1
        assert conflicts[0].appointment_id == second.id
        assert conflicts[0].status == ConflictStatus.PENDING.value
        assert second.staff_id == alice.id
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_branch_opt_in_resolves_conflicts_on_booking(
        self, db, booking_engine, dispatcher, branch, alice, bob, customer, color_service
    ):
        branch.auto_resolve_conflicts = True
        await db.commit()

        await booking_engine.create_appointment(booking(branch, alice, customer, color_service, at(10)))
        second = await booking_engine.create_appointment(
            booking(branch, alice, customer, color_service, at(10), allow_overlap=True)
        )

        assert second.staff_id == bob.id
        conflicts = await all_conflicts(db)
        assert [c.status for c in conflicts] == [ConflictStatus.AUTO_RESOLVED.value]
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_reschedule_returns_fresh_state(
        self, booking_engine, branch, alice, customer, color_service
    ):
        appointment = await booking_engine.create_appointment(
            booking(branch, alice, customer, color_service, at(10))
        )

        moved = await booking_engine.reschedule_appointment(appointment.id, at(14))

        assert moved.start_datetime == at(14)
        assert moved.reschedule_count == 1
        assert [item.service_id for item in moved.service_items] == [color_service.id]
