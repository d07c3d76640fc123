from datetime import time, timedelta

import pytest
from sqlalchemy import func, select

from salon_booking.core.exceptions import ResolutionExecutionFailure
from salon_booking.models.appointment import AppointmentStatus
from salon_booking.models.conflict import ConflictStatus, ConflictType
from salon_booking.models.notification import Notification
from salon_booking.models.service import Service
from salon_booking.models.waitlist import WaitlistEntry, WaitlistStatus
from salon_booking.schemas.conflict import ActionType, DetectionContext, ResolutionStrategy
from salon_booking.services.escalation import ESCALATION_NOTE
from tests.conftest import FIXED_NOW
from tests.fixtures.booking_fixtures import (
    SUNDAY,
    TEST_DAY,
    add_appointment,
    add_branch,
    add_schedule,
    add_staff,
    at,
)


async def double_booking(db, booking_engine, branch, staff, customer, services, start=None):
    """Two overlapping bookings for ``staff``; returns (first, second, conflict id)."""
    start = start or at(10)
    first = await add_appointment(db, branch, staff, customer, start, services)
    second = await add_appointment(db, branch, staff, customer, start, services)
    conflicts = await booking_engine.detect_conflicts(second.id)
    assert len(conflicts) == 1
    return first, second, conflicts[0].id


async def count(db, model):
    return (await db.execute(select(func.count(model.id)))).scalar_one()


def ranked(suggestions):
    return [(s.strategy, s.confidence) for s in suggestions]


class TestDoubleBooking:
    @pytest.mark.asyncio
    async def test_suggestions_ranked_by_confidence(
        self, db, booking_engine, branch, alice, bob, customer, color_service
    ):
        _, _, conflict_id = await double_booking(
            db, booking_engine, branch, alice, customer, [color_service]
        )

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)

        assert ranked(suggestions) == [
            (ResolutionStrategy.FIND_ALTERNATIVE_STAFF, 0.9),
            (ResolutionStrategy.RESCHEDULE_NEARBY, 0.8),
            (ResolutionStrategy.WAITLIST, 0.5),
        ]
        reassign = suggestions[0].actions[0]
        assert reassign.type == ActionType.UPDATE_APPOINTMENT
        assert reassign.data == {"staff_id": bob.id}
        assert suggestions[1].actions[0].data == {"start_datetime": at(11, 30).isoformat()}

    @pytest.mark.asyncio
    async def test_auto_resolution_reassigns_to_free_staff(
        self, db, booking_engine, dispatcher, branch, alice, bob, customer, color_service
    ):
        first, second, conflict_id = await double_booking(
            db, booking_engine, branch, alice, customer, [color_service]
        )
        first_id, second_id = first.id, second.id

        assert await booking_engine.attempt_auto_resolution(conflict_id) is True

        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.status == ConflictStatus.AUTO_RESOLVED.value
        assert conflict.resolved_strategy == ResolutionStrategy.FIND_ALTERNATIVE_STAFF.value
        assert conflict.resolved_at == FIXED_NOW
        assert conflict.auto_resolution_attempts == 1

        moved = await booking_engine.ledger.get(second_id)
        assert moved.staff_id == bob.id
        assert moved.start_datetime == at(10)
        assert (await booking_engine.ledger.get(first_id)).staff_id == alice.id

        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0]["recipient"] == customer.contact
        assert dispatcher.sent[0]["channel"] == "sms"

    @pytest.mark.asyncio
    async def test_resolved_conflict_is_left_alone(
        self, db, booking_engine, branch, alice, bob, customer, color_service
    ):
        _, _, conflict_id = await double_booking(
            db, booking_engine, branch, alice, customer, [color_service]
        )
        await booking_engine.attempt_auto_resolution(conflict_id)

        assert await booking_engine.attempt_auto_resolution(conflict_id) is True

        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.auto_resolution_attempts == 1

    @pytest.mark.asyncio
    async def test_failed_strategy_falls_through_to_next(
        self, db, booking_engine, branch, alice, bob, customer, color_service
    ):
        _, second, conflict_id = await double_booking(
            db, booking_engine, branch, alice, customer, [color_service]
        )
        second_id = second.id
        resolver = booking_engine.resolver
        execute = resolver.execute
        tried = []

        async def flaky_execute(conflict_id, suggestion):
            tried.append(suggestion.strategy)
            if suggestion.strategy == ResolutionStrategy.FIND_ALTERNATIVE_STAFF:
                raise ResolutionExecutionFailure("staff no longer free")
            await execute(conflict_id, suggestion)

        resolver.execute = flaky_execute

        assert await booking_engine.attempt_auto_resolution(conflict_id) is True

        assert tried == [
            ResolutionStrategy.FIND_ALTERNATIVE_STAFF,
            ResolutionStrategy.RESCHEDULE_NEARBY,
        ]
        moved = await booking_engine.ledger.get(second_id)
        assert moved.staff_id == alice.id
        assert moved.start_datetime == at(11, 30)
        assert moved.status == AppointmentStatus.RESCHEDULED.value
        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.resolved_strategy == ResolutionStrategy.RESCHEDULE_NEARBY.value


class TestEscalation:
    @pytest.fixture
    async def solo(self, db, branch, color_service):
        """Only staff member, scheduled for exactly one booking's length."""
        return await add_staff(
            db, branch, "Solo", [color_service], schedule=(time(10, 0), time(11, 15))
        )

    @pytest.mark.asyncio
    async def test_unresolvable_conflict_offers_waitlist_only(
        self, db, booking_engine, branch, solo, customer, color_service
    ):
        _, _, conflict_id = await double_booking(
            db, booking_engine, branch, solo, customer, [color_service]
        )

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)

        assert ranked(suggestions) == [(ResolutionStrategy.WAITLIST, 0.5)]

    @pytest.mark.asyncio
    async def test_escalates_on_third_failed_attempt(
        self, db, booking_engine, dispatcher, branch, solo, customer, color_service
    ):
        _, _, conflict_id = await double_booking(
            db, booking_engine, branch, solo, customer, [color_service]
        )

        for attempt in (1, 2):
            assert await booking_engine.attempt_auto_resolution(conflict_id) is False
            conflict = await booking_engine.get_conflict(conflict_id)
            assert conflict.auto_resolution_attempts == attempt
            assert not conflict.escalated
        assert await count(db, Notification) == 0

        assert await booking_engine.attempt_auto_resolution(conflict_id) is False

        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.auto_resolution_attempts == 3
        assert conflict.escalated
        assert conflict.escalated_at == FIXED_NOW
        assert conflict.status == ConflictStatus.PENDING.value
        assert conflict.resolution_notes == ESCALATION_NOTE

        notifications = (await db.execute(select(Notification))).scalars().all()
        assert len(notifications) == 1
        assert notifications[0].priority == "high"
        assert notifications[0].recipient == branch.management_recipient
        assert notifications[0].action_url == f"/dashboard/conflicts/{conflict.uuid}"
        assert [n["priority"] for n in dispatcher.sent] == ["high"]

    @pytest.mark.asyncio
    async def test_further_attempts_do_not_notify_again(
        self, db, booking_engine, dispatcher, branch, solo, customer, color_service
    ):
        _, _, conflict_id = await double_booking(
            db, booking_engine, branch, solo, customer, [color_service]
        )
        for _ in range(4):
            await booking_engine.attempt_auto_resolution(conflict_id)

        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.auto_resolution_attempts == 4
        assert await count(db, Notification) == 1
        assert len(dispatcher.sent) == 1


class TestWaitlist:
    @pytest.fixture
    async def solo(self, db, branch, color_service):
        return await add_staff(
            db, branch, "Solo", [color_service], schedule=(time(10, 0), time(11, 15))
        )

    @pytest.mark.asyncio
    async def test_waitlist_plan_moves_customer_to_waitlist(
        self, db, booking_engine, dispatcher, branch, solo, customer, color_service
    ):
        _, second, conflict_id = await double_booking(
            db, booking_engine, branch, solo, customer, [color_service]
        )
        second_id = second.id
        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)

        await booking_engine.resolver.execute(conflict_id, suggestions[-1])

        entry = (await db.execute(select(WaitlistEntry))).scalar_one()
        assert entry.customer_id == customer.id
        assert entry.source_appointment_id == second_id
        assert entry.service_id == color_service.id
        assert entry.preferred_date == TEST_DAY
        assert entry.preferred_time == "10:00"
        assert entry.status == WaitlistStatus.WAITING.value
        assert entry.expires_at == FIXED_NOW + timedelta(days=7)

        cancelled = await booking_engine.ledger.get(second_id)
        assert cancelled.status == AppointmentStatus.CANCELLED.value

        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.status == ConflictStatus.AUTO_RESOLVED.value
        assert conflict.resolved_strategy == ResolutionStrategy.WAITLIST.value
        assert len(dispatcher.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_action_leaves_no_partial_effects(
        self, db, booking_engine, dispatcher, branch, solo, customer, color_service
    ):
        _, second, conflict_id = await double_booking(
            db, booking_engine, branch, solo, customer, [color_service]
        )
        second_id = second.id
        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)
        second.status = AppointmentStatus.COMPLETED.value
        await db.commit()

        with pytest.raises(ResolutionExecutionFailure):
            await booking_engine.resolver.execute(conflict_id, suggestions[-1])

        assert await count(db, WaitlistEntry) == 0
        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.status == ConflictStatus.PENDING.value
        assert (await booking_engine.ledger.get(second_id)).status == "completed"
        assert dispatcher.sent == []


class TestStaffUnavailable:
    @pytest.fixture
    async def balayage(self, db):
        service = Service(
            name="Balayage",
            duration_minutes=90,
            price=200,
            required_specializations=["color", "balayage"],
        )
        db.add(service)
        await db.commit()
        return service

    async def unavailable_booking(self, db, booking_engine, branch, customer, service):
        morning = await add_staff(
            db, branch, "Morning", [service], schedule=(time(9, 0), time(13, 0))
        )
        appointment = await add_appointment(db, branch, morning, customer, at(14), [service])
        conflicts = await booking_engine.detect_conflicts(
            appointment.id, DetectionContext.SCHEDULE_CHANGE
        )
        assert [c.type for c in conflicts] == [ConflictType.STAFF_UNAVAILABLE]
        return appointment, conflicts[0].id

    @pytest.mark.asyncio
    async def test_partial_skill_match_gets_floor_confidence(
        self, db, booking_engine, branch, customer, balayage
    ):
        await add_staff(db, branch, "Carla", [balayage], specializations=["color"])
        _, conflict_id = await self.unavailable_booking(
            db, booking_engine, branch, customer, balayage
        )

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)

        assert ranked(suggestions) == [
            (ResolutionStrategy.FIND_ALTERNATIVE_STAFF, 0.5),
            (ResolutionStrategy.WAITLIST, 0.5),
        ]

    @pytest.mark.asyncio
    async def test_full_skill_match_is_resolved_automatically(
        self, db, booking_engine, branch, customer, balayage
    ):
        await add_staff(db, branch, "Carla", [balayage], specializations=["color"])
        dora = await add_staff(db, branch, "Dora", [balayage], specializations=["color", "balayage"])
        appointment, conflict_id = await self.unavailable_booking(
            db, booking_engine, branch, customer, balayage
        )
        appointment_id = appointment.id

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)
        assert suggestions[0].confidence == 1.0
        assert suggestions[0].actions[0].data == {"staff_id": dora.id}

        assert await booking_engine.attempt_auto_resolution(conflict_id) is True
        assert (await booking_engine.ledger.get(appointment_id)).staff_id == dora.id

    @pytest.mark.asyncio
    async def test_staff_without_matching_skills_is_not_suggested(
        self, db, booking_engine, branch, customer, balayage
    ):
        await add_staff(db, branch, "Ed", [balayage], specializations=["cut"])
        _, conflict_id = await self.unavailable_booking(
            db, booking_engine, branch, customer, balayage
        )

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)

        assert ranked(suggestions) == [(ResolutionStrategy.WAITLIST, 0.5)]


class TestOverlapping:
    @pytest.mark.asyncio
    async def test_split_services_runs_secondary_service_in_parallel(
        self, db, booking_engine, branch, alice, bob, customer, color_service, blow_dry_service
    ):
        await add_appointment(db, branch, alice, customer, at(11, 15), [blow_dry_service])
        combo = await add_appointment(
            db, branch, alice, customer, at(10), [color_service, blow_dry_service]
        )
        combo_id = combo.id
        conflicts = await booking_engine.detect_conflicts(combo_id, DetectionContext.SERVICE_SPLIT)
        assert [c.type for c in conflicts] == [ConflictType.OVERLAPPING]
        conflict_id = conflicts[0].id

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)
        assert ranked(suggestions) == [
            (ResolutionStrategy.SPLIT_SERVICES, 0.75),
            (ResolutionStrategy.WAITLIST, 0.5),
        ]
        assert [a.type for a in suggestions[0].actions] == [
            ActionType.REASSIGN_SERVICE,
            ActionType.UPDATE_APPOINTMENT,
            ActionType.NOTIFY_CUSTOMER,
        ]

        assert await booking_engine.attempt_auto_resolution(conflict_id) is True

        split = await booking_engine.ledger.get(combo_id)
        assert split.staff_id == alice.id
        assert split.end_datetime == at(11, 15)
        assert [item.staff_id for item in split.service_items] == [alice.id, bob.id]
        conflict = await booking_engine.get_conflict(conflict_id)
        assert conflict.resolved_strategy == ResolutionStrategy.SPLIT_SERVICES.value


class TestBranchClosed:
    @pytest.mark.asyncio
    async def test_sibling_branch_suggested_below_threshold(
        self, db, booking_engine, branch, alice, customer, color_service
    ):
        uptown = await add_branch(db, name="Uptown", open_on_sunday=True)
        dave = await add_staff(db, uptown, "Dave", [color_service], day=SUNDAY)
        await add_schedule(db, alice, SUNDAY, time(9, 0), time(17, 0))
        appointment = await add_appointment(
            db, branch, alice, customer, at(10, day=SUNDAY), [color_service]
        )
        appointment_id = appointment.id
        conflicts = await booking_engine.detect_conflicts(appointment_id, DetectionContext.HOURS_CHANGE)
        conflict_id = conflicts[0].id

        suggestions = await booking_engine.generate_resolution_suggestions(conflict_id)
        assert ranked(suggestions) == [
            (ResolutionStrategy.RESCHEDULE_NEARBY, 0.6),
            (ResolutionStrategy.WAITLIST, 0.5),
        ]
        assert suggestions[0].actions[0].data == {"branch_id": uptown.id, "staff_id": dave.id}

        assert await booking_engine.attempt_auto_resolution(conflict_id) is False

        await booking_engine.resolver.execute(conflict_id, suggestions[0])
        moved = await booking_engine.ledger.get(appointment_id)
        assert moved.branch_id == uptown.id
        assert moved.staff_id == dave.id
        assert moved.start_datetime == at(10, day=SUNDAY)
