import pytest

from tests.fixtures.booking_fixtures import TEST_DAY, add_appointment, at


def appointment_payload(branch, staff, customer, services, start, **extra):
    payload = {
        "branch_id": branch.id,
        "staff_id": staff.id,
        "customer_id": customer.id,
        "service_ids": [service.id for service in services],
        "start_datetime": start.isoformat(),
    }
    payload.update(extra)
    return payload


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestAvailabilityApi:
    @pytest.mark.asyncio
    async def test_list_slots(self, client, branch, alice, color_service):
        response = await client.get(
            "/api/v1/availability/slots",
            params={
                "branch_id": branch.id,
                "service_ids": [color_service.id],
                "date": TEST_DAY.isoformat(),
                "staff_id": alice.id,
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["branch_id"] == branch.id
        assert len(body["slots"]) == 14
        assert body["slots"][0]["start"] == "2030-06-03T09:00:00"
        assert body["slots"][-1]["start"] == "2030-06-03T15:30:00"

    @pytest.mark.asyncio
    async def test_unknown_service_is_404(self, client, branch, alice):
        response = await client.get(
            "/api/v1/availability/slots",
            params={"branch_id": branch.id, "service_ids": [9999], "date": TEST_DAY.isoformat()},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_check_slot(self, db, client, branch, alice, customer, color_service):
        await add_appointment(db, branch, alice, customer, at(10), [color_service])

        taken = await client.get(
            "/api/v1/availability/check",
            params={"staff_id": alice.id, "start": at(11).isoformat(), "duration_minutes": 30},
        )
        free = await client.get(
            "/api/v1/availability/check",
            params={"staff_id": alice.id, "start": at(12).isoformat(), "duration_minutes": 30},
        )

        assert taken.json()["available"] is False
        assert free.json()["available"] is True

    @pytest.mark.asyncio
    async def test_check_slot_invalid_duration(self, client, alice):
        response = await client.get(
            "/api/v1/availability/check",
            params={"staff_id": alice.id, "start": at(11).isoformat(), "duration_minutes": 0},
        )

        assert response.status_code == 422


class TestAppointmentApi:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, client, branch, alice, customer, color_service):
        response = await client.post(
            "/api/v1/appointments/",
            json=appointment_payload(branch, alice, customer, [color_service], at(10)),
        )

        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "pending"
        assert created["end_datetime"] == "2030-06-03T11:15:00"
        assert created["service_items"][0]["duration_minutes"] == 75

        fetched = await client.get(f"/api/v1/appointments/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["confirmation_code"] == created["confirmation_code"]

    @pytest.mark.asyncio
    async def test_timezone_aware_start_is_stored_as_utc(
        self, client, branch, alice, customer, color_service
    ):
        payload = appointment_payload(branch, alice, customer, [color_service], at(10))
        payload["start_datetime"] = "2030-06-03T13:00:00+03:00"

        response = await client.post("/api/v1/appointments/", json=payload)

        assert response.status_code == 201
        assert response.json()["start_datetime"] == "2030-06-03T10:00:00"

    @pytest.mark.asyncio
    async def test_taken_slot_is_409(self, client, branch, alice, customer, color_service):
        first = await client.post(
            "/api/v1/appointments/",
            json=appointment_payload(branch, alice, customer, [color_service], at(10)),
        )
        second = await client.post(
            "/api/v1/appointments/",
            json=appointment_payload(branch, alice, customer, [color_service], at(10, 30)),
        )

        assert second.status_code == 409
        detail = second.json()["detail"]
        assert detail["staff_id"] == alice.id
        assert detail["conflicting_appointment_id"] == first.json()["id"]

    @pytest.mark.asyncio
    async def test_idempotent_create(self, client, branch, alice, customer, color_service):
        payload = appointment_payload(
            branch, alice, customer, [color_service], at(10), idempotency_key="checkout-42"
        )

        first = await client.post("/api/v1/appointments/", json=payload)
        replay = await client.post("/api/v1/appointments/", json=payload)

        assert replay.status_code == 201
        assert replay.json()["id"] == first.json()["id"]

    @pytest.mark.asyncio
    async def test_unknown_appointment_is_404(self, client):
        response = await client.get("/api/v1/appointments/9999")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_reschedule_and_cancel(self, client, branch, alice, customer, color_service):
        created = await client.post(
            "/api/v1/appointments/",
            json=appointment_payload(branch, alice, customer, [color_service], at(10)),
        )
        appointment_id = created.json()["id"]

        moved = await client.post(
            f"/api/v1/appointments/{appointment_id}/reschedule",
            json={"new_start_datetime": at(14).isoformat(), "reason": "Running late"},
        )
        assert moved.status_code == 200
        assert moved.json()["status"] == "rescheduled"
        assert moved.json()["reschedule_count"] == 1
        assert moved.json()["reschedule_reason"] == "Running late"

        cancelled = await client.post(
            f"/api/v1/appointments/{appointment_id}/status",
            json={"new_status": "cancelled", "notes": "Customer request"},
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        again = await client.post(
            f"/api/v1/appointments/{appointment_id}/status",
            json={"new_status": "confirmed"},
        )
        assert again.status_code == 409


class TestConflictApi:
    async def _double_booked(self, client, branch, staff, customer, services):
        await client.post(
            "/api/v1/appointments/",
            json=appointment_payload(branch, staff, customer, services, at(10)),
        )
        second = await client.post(
            "/api/v1/appointments/",
            json=appointment_payload(branch, staff, customer, services, at(10), allow_overlap=True),
        )
        assert second.status_code == 201
        return second.json()["id"]

    @pytest.mark.asyncio
    async def test_detect_suggest_and_resolve(
        self, client, dispatcher, branch, alice, bob, customer, color_service
    ):
        appointment_id = await self._double_booked(client, branch, alice, customer, [color_service])

        detected = await client.post(f"/api/v1/appointments/{appointment_id}/conflicts/detect")
        assert detected.status_code == 200
        conflicts = detected.json()
        assert len(conflicts) == 1
        assert conflicts[0]["conflict_type"] == "double_booking"
        conflict_id = conflicts[0]["id"]

        suggestions = await client.get(f"/api/v1/conflicts/{conflict_id}/suggestions")
        assert [s["strategy"] for s in suggestions.json()] == [
            "find_alternative_staff",
            "reschedule_nearby",
            "waitlist",
        ]

        resolved = await client.post(f"/api/v1/conflicts/{conflict_id}/auto-resolve")
        assert resolved.status_code == 200
        assert resolved.json() == {
            "conflict_id": conflict_id,
            "resolved": True,
            "status": "auto_resolved",
            "attempts": 1,
            "escalated": False,
        }

        appointment = await client.get(f"/api/v1/appointments/{appointment_id}")
        assert appointment.json()["staff_id"] == bob.id

    @pytest.mark.asyncio
    async def test_manual_escalation(self, client, dispatcher, branch, alice, customer, color_service):
        appointment_id = await self._double_booked(client, branch, alice, customer, [color_service])
        detected = await client.post(f"/api/v1/appointments/{appointment_id}/conflicts/detect")
        conflict_id = detected.json()[0]["id"]

        response = await client.post(f"/api/v1/conflicts/{conflict_id}/escalate")

        assert response.status_code == 200
        body = response.json()
        assert body["escalated"] is True
        assert body["status"] == "pending"
        assert [n["priority"] for n in dispatcher.sent] == ["high"]

    @pytest.mark.asyncio
    async def test_unknown_conflict_is_404(self, client):
        response = await client.get("/api/v1/conflicts/9999")

        assert response.status_code == 404
