from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from salon_booking.core.config import EngineSettings
from salon_booking.core.exceptions import (
    BookingEngineError,
    EscalationRequired,
    NotFound,
    ResolutionExecutionFailure,
)
from salon_booking.models.appointment import Appointment
from salon_booking.models.appointment_item import AppointmentServiceItem
from salon_booking.models.conflict import BookingConflict, ConflictStatus, ConflictType
from salon_booking.models.notification import NotificationChannel, NotificationPriority
from salon_booking.models.waitlist import WaitlistEntry, WaitlistStatus
from salon_booking.schemas.conflict import (
    ActionType,
    ResolutionAction,
    ResolutionStrategy,
    ResolutionSuggestion,
)
from salon_booking.services.escalation import EscalationManager, load_conflict
from salon_booking.services.ledger import AppointmentLedger
from salon_booking.services.notification_service import NotificationDispatcher
from salon_booking.services.slots import SlotGenerator
from salon_booking.utils.intervals import Interval, utc_to_local, utcnow

logger = structlog.get_logger(__name__)

FIND_ALTERNATIVE_STAFF_CONFIDENCE = 0.9
RESCHEDULE_NEARBY_CONFIDENCE = 0.8
SPLIT_SERVICES_CONFIDENCE = 0.75
OTHER_BRANCH_CONFIDENCE = 0.6
WAITLIST_CONFIDENCE = 0.5


@dataclass
class PendingNotification:
    recipient: str
    channel: str
    message: str
    priority: str = NotificationPriority.NORMAL.value


def _notify(appointment: Appointment, message: str) -> ResolutionAction:
    return ResolutionAction(
        type=ActionType.NOTIFY_CUSTOMER,
        target_id=appointment.id,
        data={"message": message},
    )


class ConflictResolver:
    """Builds confidence-ranked resolution plans and executes the best one.

    Each plan's actions run in a single transaction; customer notifications
    go out only after that transaction commits.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[AppointmentLedger] = None,
        slots: Optional[SlotGenerator] = None,
        escalation: Optional[EscalationManager] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or EngineSettings()
        self.ledger = ledger or AppointmentLedger(db)
        self.slots = slots or SlotGenerator(db, ledger=self.ledger, settings=self.settings)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.escalation = escalation or EscalationManager(db, self.dispatcher, clock=clock)
        self.clock = clock

    @property
    def catalog(self):
        return self.slots.catalog

    # Suggestions

    async def _alternative_staff(self, appointment: Appointment) -> Optional[ResolutionSuggestion]:
        branch = await self.catalog.get_branch(appointment.branch_id)
        candidates = await self.catalog.staff_offering(
            branch.id, appointment.service_ids, exclude_staff_ids=(appointment.staff_id,)
        )
        for staff in candidates:
            if await self.slots.can_take(staff, branch, appointment.interval, (appointment.id,)):
                return ResolutionSuggestion(
                    strategy=ResolutionStrategy.FIND_ALTERNATIVE_STAFF,
                    confidence=FIND_ALTERNATIVE_STAFF_CONFIDENCE,
                    description=f"Reassign to {staff.name}, who is free at the same time",
                    actions=[
                        ResolutionAction(
                            type=ActionType.UPDATE_APPOINTMENT,
                            target_id=appointment.id,
                            data={"staff_id": staff.id},
                        ),
                        _notify(
                            appointment,
                            f"Your appointment {appointment.confirmation_code} will be "
                            f"with {staff.name}.",
                        ),
                    ],
                )
        return None

    async def _reschedule_nearby(self, appointment: Appointment) -> Optional[ResolutionSuggestion]:
        nearby = await self.slots.find_nearby_slots(
            appointment, self.settings.nearby_window_minutes
        )
        if not nearby:
            return None
        slot = nearby[0]
        branch = await self.catalog.get_branch(appointment.branch_id)
        local = utc_to_local(slot.start, branch.timezone)
        shift = int((slot.start - appointment.start_datetime).total_seconds() // 60)
        return ResolutionSuggestion(
            strategy=ResolutionStrategy.RESCHEDULE_NEARBY,
            confidence=RESCHEDULE_NEARBY_CONFIDENCE,
            description=f"Move to {local:%H:%M} ({shift:+d} min) with the same staff member",
            actions=[
                ResolutionAction(
                    type=ActionType.UPDATE_APPOINTMENT,
                    target_id=appointment.id,
                    data={"start_datetime": slot.start.isoformat()},
                ),
                _notify(
                    appointment,
                    f"Your appointment {appointment.confirmation_code} has moved to "
                    f"{local:%Y-%m-%d %H:%M}.",
                ),
            ],
        )

    async def _skill_matched_staff(self, appointment: Appointment) -> Optional[ResolutionSuggestion]:
        branch = await self.catalog.get_branch(appointment.branch_id)
        current = await self.catalog.get_staff(appointment.staff_id)
        services = await self.catalog.get_services(appointment.service_ids)
        required = set()
        for service in services:
            required.update(service.required_specializations or ())
        if not required:
            required = set(current.skill_set)

        candidates = await self.catalog.staff_offering(
            branch.id, appointment.service_ids, exclude_staff_ids=(current.id,)
        )
        best = None
        for staff in candidates:
            if required:
                matches = len(required & staff.skill_set)
                if matches == 0:
                    continue
                confidence = max(self.settings.skill_match_floor, matches / len(required))
            else:
                confidence = self.settings.skill_match_floor
            if best is not None and confidence <= best[0]:
                continue
            if await self.slots.can_take(staff, branch, appointment.interval, (appointment.id,)):
                best = (confidence, staff)

        if best is None:
            return None
        confidence, staff = best
        return ResolutionSuggestion(
            strategy=ResolutionStrategy.FIND_ALTERNATIVE_STAFF,
            confidence=round(min(confidence, 1.0), 4),
            description=f"Reassign to {staff.name}, matching the required specializations",
            actions=[
                ResolutionAction(
                    type=ActionType.UPDATE_APPOINTMENT,
                    target_id=appointment.id,
                    data={"staff_id": staff.id},
                ),
                _notify(
                    appointment,
                    f"Your appointment {appointment.confirmation_code} will be with {staff.name}.",
                ),
            ],
        )

    async def _split_services(self, appointment: Appointment) -> Optional[ResolutionSuggestion]:
        items = list(appointment.service_items)
        if len(items) < 2:
            return None
        branch = await self.catalog.get_branch(appointment.branch_id)
        primary, secondary = items[0], items[1:]

        actions = []
        taken = {appointment.staff_id}
        for item in secondary:
            period = Interval.of(appointment.start_datetime, item.duration_minutes)
            candidates = await self.catalog.staff_offering(
                branch.id, [item.service_id], exclude_staff_ids=taken
            )
            helper = None
            for staff in candidates:
                if await self.slots.can_take(staff, branch, period, (appointment.id,)):
                    helper = staff
                    break
            if helper is None:
                return None
            taken.add(helper.id)
            actions.append(
                ResolutionAction(
                    type=ActionType.REASSIGN_SERVICE,
                    target_id=item.id,
                    data={"staff_id": helper.id},
                )
            )

        actions.append(
            ResolutionAction(
                type=ActionType.UPDATE_APPOINTMENT,
                target_id=appointment.id,
                data={"duration_minutes": primary.duration_minutes},
            )
        )
        actions.append(
            _notify(
                appointment,
                f"Some services of appointment {appointment.confirmation_code} will be "
                "performed in parallel by another team member.",
            )
        )
        return ResolutionSuggestion(
            strategy=ResolutionStrategy.SPLIT_SERVICES,
            confidence=SPLIT_SERVICES_CONFIDENCE,
            description=f"Perform {len(secondary)} secondary service(s) concurrently with other staff",
            actions=actions,
        )

    async def _other_branch(self, appointment: Appointment) -> Optional[ResolutionSuggestion]:
        branch = await self.catalog.get_branch(appointment.branch_id)
        for sibling in await self.catalog.sibling_branches(branch):
            day = utc_to_local(appointment.start_datetime, sibling.timezone).date()
            windows = await self.slots.branch_windows(sibling, day)
            if not any(window.contains(appointment.interval) for window in windows):
                continue
            for staff in await self.catalog.staff_offering(sibling.id, appointment.service_ids):
                if await self.slots.can_take(staff, sibling, appointment.interval, (appointment.id,)):
                    return ResolutionSuggestion(
                        strategy=ResolutionStrategy.RESCHEDULE_NEARBY,
                        confidence=OTHER_BRANCH_CONFIDENCE,
                        description=f"Move to {sibling.name}, open at the same time",
                        actions=[
                            ResolutionAction(
                                type=ActionType.UPDATE_APPOINTMENT,
                                target_id=appointment.id,
                                data={"branch_id": sibling.id, "staff_id": staff.id},
                            ),
                            _notify(
                                appointment,
                                f"Your appointment {appointment.confirmation_code} has moved "
                                f"to our {sibling.name} branch.",
                            ),
                        ],
                    )
        return None

    def _waitlist(self, appointment: Appointment) -> ResolutionSuggestion:
        expires_at = self.clock() + timedelta(days=self.settings.waitlist_expiry_days)
        service_ids = appointment.service_ids
        return ResolutionSuggestion(
            strategy=ResolutionStrategy.WAITLIST,
            confidence=WAITLIST_CONFIDENCE,
            description="Add the customer to the waitlist and cancel the conflicting booking",
            actions=[
                ResolutionAction(
                    type=ActionType.CREATE_WAITLIST,
                    target_id=appointment.id,
                    data={
                        "customer_id": appointment.customer_id,
                        "branch_id": appointment.branch_id,
                        "service_id": service_ids[0] if service_ids else None,
                        "staff_id": appointment.staff_id,
                        "preferred_start": appointment.start_datetime.isoformat(),
                        "expires_at": expires_at.isoformat(),
                    },
                ),
                ResolutionAction(
                    type=ActionType.CANCEL_APPOINTMENT,
                    target_id=appointment.id,
                    data={"reason": "Moved to waitlist after a scheduling conflict"},
                ),
                _notify(
                    appointment,
                    f"Your appointment {appointment.confirmation_code} could not be kept; "
                    "you are on the waitlist and we will contact you when a slot opens.",
                ),
            ],
        )

    async def generate_resolution_suggestions(
        self, conflict: BookingConflict
    ) -> List[ResolutionSuggestion]:
        """Candidate plans for the conflict, highest confidence first; never empty."""
        appointment = await self.ledger.get(conflict.appointment_id)
        conflict_type = conflict.type
        builders = []
        if conflict_type == ConflictType.DOUBLE_BOOKING:
            builders = [self._alternative_staff, self._reschedule_nearby]
        elif conflict_type == ConflictType.STAFF_UNAVAILABLE:
            builders = [self._skill_matched_staff]
        elif conflict_type == ConflictType.OVERLAPPING:
            builders = [self._split_services]
        elif conflict_type == ConflictType.BRANCH_CLOSED:
            builders = [self._other_branch]

        suggestions = []
        for build in builders:
            suggestion = await build(appointment)
            if suggestion is not None:
                suggestions.append(suggestion)
        suggestions.append(self._waitlist(appointment))

        # Stable: equal confidences keep table order
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions

    # Execution

    async def _apply(self, action: ResolutionAction, pending: List[PendingNotification]) -> None:
        data = action.data
        if action.type == ActionType.UPDATE_APPOINTMENT:
            appointment = await self.ledger.get(action.target_id)
            start = data.get("start_datetime")
            await self.ledger.apply_update(
                appointment,
                start=datetime.fromisoformat(start) if start else None,
                staff_id=data.get("staff_id"),
                branch_id=data.get("branch_id"),
                duration_minutes=data.get("duration_minutes"),
            )
        elif action.type == ActionType.REASSIGN_SERVICE:
            item = await self.db.get(AppointmentServiceItem, action.target_id)
            if item is None:
                raise NotFound("Appointment service item", action.target_id)
            staff = await self.catalog.get_staff(data["staff_id"])
            item.staff_id = staff.id
        elif action.type == ActionType.CANCEL_APPOINTMENT:
            appointment = await self.ledger.get(action.target_id)
            await self.ledger.apply_cancel(appointment, reason=data.get("reason"))
        elif action.type == ActionType.CREATE_WAITLIST:
            preferred = datetime.fromisoformat(data["preferred_start"])
            branch = await self.catalog.get_branch(data["branch_id"])
            local = utc_to_local(preferred, branch.timezone)
            self.db.add(
                WaitlistEntry(
                    customer_id=data["customer_id"],
                    branch_id=branch.id,
                    service_id=data.get("service_id"),
                    staff_id=data.get("staff_id"),
                    source_appointment_id=action.target_id,
                    preferred_date=local.date(),
                    preferred_time=f"{local:%H:%M}",
                    status=WaitlistStatus.WAITING.value,
                    expires_at=datetime.fromisoformat(data["expires_at"]),
                )
            )
        elif action.type == ActionType.NOTIFY_CUSTOMER:
            appointment = await self.ledger.get(action.target_id)
            customer = await self.catalog.get_customer(appointment.customer_id)
            pending.append(
                PendingNotification(
                    recipient=customer.contact,
                    channel=NotificationChannel.SMS.value,
                    message=data["message"],
                )
            )
        await self.db.flush()

    async def execute(self, conflict_id: int, suggestion: ResolutionSuggestion) -> None:
        """Apply every action of the plan and resolve the conflict, or change nothing."""
        pending: List[PendingNotification] = []
        try:
            conflict = await load_conflict(self.db, conflict_id)
            for action in suggestion.actions:
                await self._apply(action, pending)
            conflict.status = ConflictStatus.AUTO_RESOLVED.value
            conflict.resolved_strategy = suggestion.strategy.value
            conflict.resolution_notes = suggestion.description
            conflict.resolved_at = self.clock()
            await self.db.commit()
        except (BookingEngineError, SQLAlchemyError, KeyError, ValueError) as e:
            await self.db.rollback()
            self.ledger.discard_invalidations()
            raise ResolutionExecutionFailure(
                f"Strategy {suggestion.strategy.value} failed for conflict {conflict_id}: {e}"
            ) from e

        await self.ledger.flush_invalidations()
        for notification in pending:
            await self.dispatcher.send(
                recipient=notification.recipient,
                channel=notification.channel,
                message=notification.message,
                priority=notification.priority,
            )

    async def attempt_auto_resolution(self, conflict_id: int) -> bool:
        """Try the plans at or above the confidence threshold, best first.

        Every call counts as an attempt; once the counter reaches the maximum
        an unresolved conflict is escalated.
        """
        conflict = await load_conflict(self.db, conflict_id)
        if conflict.is_resolved:
            return True

        conflict.auto_resolution_attempts = (conflict.auto_resolution_attempts or 0) + 1
        attempts = conflict.auto_resolution_attempts
        await self.db.commit()

        threshold = self.settings.auto_resolve_confidence_threshold
        try:
            suggestions = await self.generate_resolution_suggestions(conflict)
            for suggestion in suggestions:
                if suggestion.confidence < threshold:
                    break
                try:
                    await self.execute(conflict_id, suggestion)
                except ResolutionExecutionFailure as e:
                    logger.warning(
                        "Resolution strategy failed",
                        conflict_id=conflict_id,
                        strategy=suggestion.strategy.value,
                        error=str(e),
                    )
                    continue
                logger.info(
                    "Conflict auto-resolved",
                    conflict_id=conflict_id,
                    strategy=suggestion.strategy.value,
                    confidence=suggestion.confidence,
                    attempts=attempts,
                )
                return True

            logger.info(
                "No automatic resolution applied",
                conflict_id=conflict_id,
                attempts=attempts,
                best_confidence=suggestions[0].confidence,
            )
            if attempts >= self.settings.max_auto_resolution_attempts:
                raise EscalationRequired(conflict_id, attempts)
        except EscalationRequired as signal:
            await self.escalation.escalate_to_manual(signal.conflict_id)
        return False
