"""Contract tests for the booking, crew, notification and dashboard endpoints.

Validates that responses use the camelCase wire format and that errors
follow the {"error", "correlation_id", "details"} shape.
"""
import pytest
from httpx import AsyncClient, ASGITransport

from carwash.api.app import app
from carwash.models.bookings import BookingStatus
from carwash.models.users import UserRole


BOOKING_FIELDS = {
    "id", "userId", "guestInfo", "customerName", "type", "confirmationCode",
    "category", "service", "serviceType", "serviceLocation", "estimatedDuration",
    "unitType", "unitSize", "plateNumber", "vehicleModel",
    "date", "timeSlot", "branch",
    "basePrice", "totalPrice", "currency", "paymentMethod", "paymentStatus",
    "status", "version", "assignedCrew", "crewNotes", "notes",
    "confirmedAt", "crewArrivalTime", "startedAt", "crewStartTime",
    "completedAt", "crewCompletionTime", "cancelledAt", "cancellationReason",
    "createdAt", "updatedAt",
}


@pytest.fixture
async def client():
    """Create test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestBookingContract:
    """Contract tests for /bookings endpoints."""

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_get_booking_contract(self, client, admin, make_booking, auth_headers):
        booking = make_booking()

        response = await client.get(f"/bookings/{booking.id}", headers=auth_headers(admin))

        assert response.status_code == 200
        data = response.json()
        assert set(data) == BOOKING_FIELDS
        assert data["assignedCrew"] == []
        assert data["guestInfo"]["firstName"] == "Juan"
        assert data["createdAt"].endswith("Z") or data["createdAt"].endswith("+00:00")

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_list_bookings_contract(self, client, admin, make_booking, auth_headers):
        make_booking()
        make_booking(status=BookingStatus.PENDING)

        response = await client.get(
            "/bookings",
            params={"status": "pending", "pageSize": 10},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"bookings", "total", "page", "pageSize", "hasNext"}
        assert data["total"] == 1
        assert data["pageSize"] == 10
        assert data["hasNext"] is False

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_history_contract(self, client, admin, make_booking, auth_headers):
        booking = make_booking(status=BookingStatus.PENDING)
        await client.patch(
            f"/bookings/{booking.id}/status",
            json={"status": "confirmed", "notes": "Deposit received"},
            headers=auth_headers(admin),
        )

        response = await client.get(f"/bookings/{booking.id}/history", headers=auth_headers(admin))

        assert response.status_code == 200
        [entry] = response.json()
        assert set(entry) == {
            "id", "bookingId", "status", "previousStatus", "updatedBy",
            "updatedByRole", "notes", "location", "timestamp",
        }
        assert entry["previousStatus"] == "pending"
        assert entry["updatedByRole"] == "admin"

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_status_update_rejects_unknown_status(self, client, admin, make_booking, auth_headers):
        booking = make_booking()

        response = await client.patch(
            f"/bookings/{booking.id}/status",
            json={"status": "teleported"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "Validation error"
        assert "correlation_id" in data

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_create_booking_requires_guest_info(self, client, admin, auth_headers):
        response = await client.post(
            "/bookings",
            json={
                "type": "guest",
                "category": "auto_detailing",
                "service": "Interior Detailing",
                "unitType": "motorcycle",
                "date": "2026-10-22",
                "timeSlot": "1:00 PM",
                "branch": "Makati",
                "basePrice": 900,
                "totalPrice": 900,
            },
            headers=auth_headers(admin),
        )

        assert response.status_code == 422
        data = response.json()
        assert data["details"]["errors"] == {"guestInfo": "required for guest bookings"}

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_assign_crew_contract(self, client, admin, make_user, make_booking, auth_headers):
        crew = make_user(UserRole.CREW)
        booking = make_booking()

        response = await client.post(
            f"/bookings/{booking.id}/crew",
            json={"crewIds": [crew.id], "notes": "Bring pressure washer"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"booking", "assignments"}
        [assignment] = data["assignments"]
        assert set(assignment) == {
            "id", "bookingId", "crewId", "assignedBy", "status", "notes",
            "assignedAt", "acceptedAt", "respondedAt",
        }
        assert assignment["status"] == "assigned"
        assert assignment["assignedBy"] == admin.id


class TestCrewContract:
    """Contract tests for /crew endpoints."""

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_list_crew_contract(self, client, admin, make_user, auth_headers):
        make_user(UserRole.CREW, crew_rating=4.5, crew_experience=3)

        response = await client.get("/crew", headers=auth_headers(admin))

        assert response.status_code == 200
        [member] = response.json()
        assert set(member) == {
            "id", "fullName", "email", "contactNumber", "branchLocation", "crewSkills",
            "crewStatus", "currentAssignment", "crewRating", "crewExperience",
        }
        assert member["crewStatus"] == "available"
        assert member["crewRating"] == 4.5

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_crew_stats_contract(self, client, admin, auth_headers):
        response = await client.get("/crew/stats", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json() == {
            "totalCrew": 0,
            "availableCrew": 0,
            "busyCrew": 0,
            "offlineCrew": 0,
            "openAssignments": 0,
            "completedToday": 0,
            "revenueToday": 0.0,
        }

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_crew_cannot_view_other_assignments(self, client, make_user, auth_headers):
        crew = make_user(UserRole.CREW)
        other = make_user(UserRole.CREW)

        response = await client.get(f"/crew/{other.id}/assignments", headers=auth_headers(crew))

        assert response.status_code == 403
        assert "error" in response.json()

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_status_history_contract(self, client, make_user, auth_headers):
        crew = make_user(UserRole.CREW)
        headers = auth_headers(crew)
        await client.patch(f"/crew/{crew.id}/status", json={"status": "offline"}, headers=headers)

        response = await client.get(f"/crew/{crew.id}/status-history", headers=headers)

        assert response.status_code == 200
        [entry] = response.json()
        assert set(entry) == {
            "id", "crewId", "status", "previousStatus", "reason", "bookingId",
            "changedBy", "startedAt", "endedAt", "durationMinutes",
        }
        assert entry["status"] == "offline"
        assert entry["changedBy"] == crew.id
        assert entry["durationMinutes"] == 0

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_crew_cannot_view_other_status_history(self, client, make_user, auth_headers):
        crew = make_user(UserRole.CREW)
        other = make_user(UserRole.CREW)

        response = await client.get(f"/crew/{other.id}/status-history", headers=auth_headers(crew))

        assert response.status_code == 403

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_location_report_contract(self, client, make_user, auth_headers):
        crew = make_user(UserRole.CREW)

        response = await client.post(
            f"/crew/{crew.id}/location",
            json={"latitude": 14.5547, "longitude": 121.0244, "heading": 90, "address": "Ayala Ave"},
            headers=auth_headers(crew),
        )

        assert response.status_code == 201
        data = response.json()
        assert set(data) == {
            "id", "crewId", "latitude", "longitude", "accuracy", "heading",
            "speed", "address", "batteryLevel", "recordedAt",
        }
        assert data["crewId"] == crew.id
        assert data["heading"] == 90

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_location_report_rejects_out_of_range_coordinates(self, client, make_user, auth_headers):
        crew = make_user(UserRole.CREW)

        response = await client.post(
            f"/crew/{crew.id}/location",
            json={"latitude": 91, "longitude": 121.0244},
            headers=auth_headers(crew),
        )

        assert response.status_code == 422
        assert "error" in response.json()

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_live_locations_contract(self, client, admin, make_user, auth_headers):
        crew = make_user(UserRole.CREW, full_name="Ben")

        response = await client.get("/crew/locations", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json() == [{
            "crewId": crew.id,
            "fullName": "Ben",
            "branchLocation": "Makati",
            "crewStatus": "available",
            "currentAssignment": None,
            "location": None,
        }]
        assert (await client.get("/crew/locations", headers=auth_headers(crew))).status_code == 403


class TestDashboardContract:
    """Contract tests for /admin/dashboard."""

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_dashboard_contract(self, client, admin, make_booking, auth_headers):
        make_booking(service="Graphene Coating", total_price=8000)

        response = await client.get(
            "/admin/dashboard",
            params={"start": "2026-10-01", "end": "2026-10-31"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {
            "totalBookings", "totalRevenue", "topServices",
            "recentBookings", "dailyStats", "statusBreakdown",
        }
        assert data["topServices"] == [{"name": "Graphene Coating", "count": 1, "revenue": 8000.0}]
        assert set(data["recentBookings"][0]) == BOOKING_FIELDS
        assert data["statusBreakdown"]["confirmed"] == 1

    @pytest.mark.contract
    @pytest.mark.asyncio
    async def test_dashboard_rejects_inverted_range(self, client, admin, auth_headers):
        response = await client.get(
            "/admin/dashboard",
            params={"start": "2026-10-31", "end": "2026-10-01"},
            headers=auth_headers(admin),
        )

        assert response.status_code == 400
