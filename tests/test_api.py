import asyncio
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from fastapi.testclient import TestClient
import tripops.api.endpoints as endpoints
import tripops.ingestion as ingestion
from tripops.main import app
from tripops.models import TripEvent
from tripops.wsmanager import ConnectionManager
from conftest import BASE_TIME

client = TestClient(app)

class FrozenDatetime(datetime):
    """datetime whose now() sits inside one wall-clock second."""
    current = BASE_TIME.replace(microsecond=250000)

    @classmethod
    def now(cls, tz=None):
        return cls.current

@pytest.fixture
def frozen_clock(monkeypatch):
    monkeypatch.setattr(FrozenDatetime, "current", BASE_TIME.replace(microsecond=250000))
    monkeypatch.setattr(ingestion, "datetime", FrozenDatetime)
    return FrozenDatetime

class TestCheckpointEndpoint:
    """Test the checkpoint submission contract."""

    def test_success_shape(self, make_trip, frozen_clock):
        """Test that a checkpoint returns the trip snapshot and logged event."""
        trip = make_trip(expected_revenue=Decimal("2100"))

        response = client.post(f"/api/trips/{trip.id}/events", json={
            "eventType": "ARRIVED_PICKUP",
            "stopId": "12",
            "stopLabel": "Shipper dock",
            "odometerMiles": 88.2,
            "lat": 27.53,
            "lon": -99.48
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert set(body["trip"]) == {
            "id", "driver", "unit", "status", "miles", "revenue", "expectedRevenue",
            "fixedCPM", "wageCPM", "rollingCPM", "addOnsCPM", "totalVariableCPM", "totalCPM",
            "variableCost", "fixedCost", "totalCost", "profit", "marginPct",
            "borderCrossings", "pickups", "deliveries", "dropHooks"
        }
        assert body["trip"]["totalCost"] == pytest.approx(30.0)
        assert body["trip"]["pickups"] == 1
        assert body["event"]["eventType"] == "ARRIVED_PICKUP"
        assert body["event"]["stopId"] == "12"
        assert body["event"]["odometerMiles"] == pytest.approx(88.2)
        assert body["event"]["at"] == "2025-03-03T14:00:00+00:00"

    def test_duplicate_submission_in_same_second(self, make_trip, db, frozen_clock):
        """Test that a double tap produces one event and one cost delta."""
        trip = make_trip(expected_revenue=Decimal("2100"))
        url = f"/api/trips/{trip.id}/events"

        first = client.post(url, json={"eventType": "ARRIVED_PICKUP"}).json()
        frozen_clock.current = BASE_TIME.replace(microsecond=990000)
        second = client.post(url, json={"eventType": "ARRIVED_PICKUP"}).json()

        assert first == second
        assert second["trip"]["totalCost"] == pytest.approx(30.0)
        assert db.query(TripEvent).count() == 1

    def test_unparseable_auxiliary_fields(self, make_trip, frozen_clock):
        """Test that bad auxiliary fields do not fail the submission."""
        trip = make_trip()

        response = client.post(f"/api/trips/{trip.id}/events", json={
            "eventType": "LEFT_PICKUP",
            "odometerMiles": -12,
            "lat": "north-ish",
        })

        assert response.status_code == 200
        event = response.json()["event"]
        assert event["odometerMiles"] is None
        assert event["lat"] is None

    def test_invalid_event_type(self, make_trip):
        """Test that unsupported types are rejected with a message."""
        trip = make_trip()

        response = client.post(f"/api/trips/{trip.id}/events", json={"eventType": "TELEPORTED"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert "TELEPORTED" in response.json()["error"]

    def test_missing_event_type(self, make_trip):
        """Test that an empty body is rejected."""
        trip = make_trip()

        response = client.post(f"/api/trips/{trip.id}/events", json={})

        assert response.status_code == 400

    def test_unknown_trip(self):
        """Test that logging against a missing trip returns 404."""
        response = client.post("/api/trips/99999/events", json={"eventType": "TRIP_START"})

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_storage_failure_is_generic(self, make_trip, monkeypatch):
        """Test that unexpected failures surface as a generic error."""
        trip = make_trip()

        def broken_projection(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(ingestion, "project_status", broken_projection)
        response = client.post(f"/api/trips/{trip.id}/events", json={"eventType": "ARRIVED_PICKUP"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Unable to log event"}
        snapshot = client.get(f"/api/trips/{trip.id}").json()
        assert snapshot["totalCost"] == 0
        assert snapshot["pickups"] == 0

    def test_ingestion_runs_off_event_loop(self, make_trip, monkeypatch):
        """Test that checkpoint storage runs in a worker thread, not on the loop."""
        trip = make_trip()
        seen = []
        real_ingest = endpoints.ingest_checkpoint

        def tracking_ingest(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append("event loop")
            except RuntimeError:
                seen.append("worker thread")
            return real_ingest(*args, **kwargs)

        monkeypatch.setattr(endpoints, "ingest_checkpoint", tracking_ingest)
        response = client.post(f"/api/trips/{trip.id}/events", json={"eventType": "ARRIVED_PICKUP"})

        assert response.status_code == 200
        assert seen == ["worker thread"]

class TestTripEndpoints:
    """Test trip read and recompute endpoints."""

    def test_trip_snapshot_and_events(self, make_trip, add_events):
        """Test reading a trip and its event log."""
        trip = make_trip(stop_offsets=[60])
        add_events(trip.id, ["TRIP_START", "ARRIVED_PICKUP"])

        snapshot = client.get(f"/api/trips/{trip.id}").json()
        events = client.get(f"/api/trips/{trip.id}/events").json()

        assert snapshot["id"] == trip.id
        assert snapshot["operations"]["status"] == "Booked"
        assert [event["eventType"] for event in events] == ["TRIP_START", "ARRIVED_PICKUP"]

    def test_missing_trip_reads(self):
        """Test 404s on unknown trips."""
        assert client.get("/api/trips/5555").status_code == 404
        assert client.get("/api/trips/5555/events").status_code == 404
        assert client.post("/api/trips/5555/recalc-add-ons").status_code == 404
        assert client.post("/api/trips/5555/recalc-totals").status_code == 404
        assert client.get("/api/trips/5555/risk").status_code == 404
        assert client.get("/api/trips/5555/status").status_code == 404

    def test_recalc_add_ons(self, make_trip, add_rate, add_events):
        """Test the add-on recompute endpoint."""
        trip = make_trip(miles=Decimal("650"), wage_cpm=Decimal("0.60"), rolling_cpm=Decimal("0.08"),
                         fixed_cpm=Decimal("0.45"), expected_revenue=Decimal("2100"))
        add_rate("PICK_PER", 30)
        add_rate("DEL_PER", 30)
        add_rate("BC_PER", 15)
        add_events(trip.id, ["ARRIVED_PICKUP", "ARRIVED_DELIVERY", "CROSSED_BORDER"])

        body = client.post(f"/api/trips/{trip.id}/recalc-add-ons").json()

        assert body["success"] is True
        assert body["trip"]["totalCost"] == pytest.approx(809.5)
        assert body["trip"]["profit"] == pytest.approx(1290.5)
        assert body["trip"]["marginPct"] == pytest.approx(0.614, abs=1e-3)

    def test_recalc_totals(self, make_trip, make_template):
        """Test the totals recalculation endpoint."""
        template = make_template(type="DED", fixed_cpm=Decimal("0.3"), wage_cpm=Decimal("0.5"),
                                 add_ons_cpm=Decimal("0"), rolling_cpm=Decimal("0.2"))
        trip = make_trip(miles=Decimal("400"), revenue=Decimal("800"), rate_id=template.id)

        body = client.post(f"/api/trips/{trip.id}/recalc-totals").json()

        assert body["rateApplied"] == {"id": template.id, "label": "DED"}
        assert body["after"]["totalCost"] == pytest.approx(400.0)
        assert body["after"]["marginPct"] == pytest.approx(50.0)
        assert body["before"]["totalCost"] is None

    def test_risk_and_status(self, make_trip, frozen_clock):
        """Test the operational views after a trip start."""
        trip = make_trip(stop_offsets=[90])
        client.post(f"/api/trips/{trip.id}/events", json={"eventType": "TRIP_START"})

        risk = client.get(f"/api/trips/{trip.id}/risk").json()
        status = client.get(f"/api/trips/{trip.id}/status").json()

        assert risk["delayRiskPct"] == pytest.approx(0.22)
        assert status["status"] == "In Progress"
        assert status["nextCommitmentLabel"].startswith("Stop 1 - Pickup")
        assert status["marginBadge"]["text"] == "Margin risk"

class TestEventFeed:
    """Test the cross-trip event feed."""

    def test_feed_summary(self, make_trip, add_events):
        """Test filters and summary counts."""
        first = make_trip(driver="Ana Soto", unit="TRK-202")
        second = make_trip(driver="Lee Park", unit="TRK-303")
        add_events(first.id, ["TRIP_START", "CROSSED_BORDER", "LEFT_DELIVERY"])
        add_events(second.id, ["TRIP_START", "CROSSED_BORDER"])

        body = client.get("/api/trip-events").json()
        assert len(body["events"]) == 5
        assert body["summary"] == {"uniqueTrips": 2, "borderCrossings": 2, "completedTrips": 1}

        body = client.get("/api/trip-events", params={"driver": "soto"}).json()
        assert {event["tripId"] for event in body["events"]} == {first.id}
        assert body["events"][0]["trip"]["unit"] == "TRK-202"

        body = client.get("/api/trip-events", params={"eventType": "CROSSED_BORDER"}).json()
        assert len(body["events"]) == 2

class TestLiveUpdates:
    """Test websocket plumbing."""

    def test_health(self):
        """Test the health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_websocket_connection(self):
        """Test that dashboards can subscribe."""
        with client.websocket_connect("/ws/trips") as websocket:
            assert websocket is not None
            websocket.send_text("ping")

    def test_broadcast_drops_broken_connections(self):
        """Test that a failing client is removed during broadcast."""
        class FakeSocket:
            def __init__(self, fail=False):
                self.fail = fail
                self.sent = []

            async def send_json(self, message):
                if self.fail:
                    raise RuntimeError("gone")
                self.sent.append(message)

        manager = ConnectionManager(max_connections=5)
        healthy, broken = FakeSocket(), FakeSocket(fail=True)
        manager.active_connections.extend([healthy, broken])

        asyncio.run(manager.broadcast_trip({"id": 1}))

        assert healthy.sent == [{"type": "trip_costing", "payload": {"id": 1}}]
        assert manager.active_connections == [healthy]
