import os
import tempfile

# Point the app at a throwaway SQLite database before anything imports it
_TMP_DIR = tempfile.mkdtemp(prefix="tripops-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["LOG_FILE"] = os.path.join(_TMP_DIR, "tripops.log")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tripops.db import SessionLocal, drop_db, init_db
from tripops.models import RateSetting, RateTemplate, Trip, TripEvent, TripStop

BASE_TIME = datetime(2025, 3, 3, 14, 0, 0, tzinfo=timezone.utc)

@pytest.fixture(autouse=True)
def setup_db():
    """Recreate all tables for every test."""
    drop_db()
    init_db()
    yield
    drop_db()

@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def make_trip(db):
    """Create a trip, optionally with stops given as minutes from BASE_TIME."""
    def _make_trip(stop_offsets=(), **fields):
        fields.setdefault("driver", "Dana Ruiz")
        fields.setdefault("unit", "TRK-101")
        fields.setdefault("miles", Decimal("650"))
        trip = Trip(**fields)
        db.add(trip)
        db.flush()
        for seq, offset in enumerate(stop_offsets, start=1):
            scheduled = None if offset is None else BASE_TIME + timedelta(minutes=offset)
            db.add(TripStop(
                trip_id=trip.id,
                seq=seq,
                stop_type="PICKUP" if seq == 1 else "DELIVERY",
                name=f"Dock {seq}",
                city="Laredo",
                state="TX",
                scheduled_at=scheduled
            ))
        db.commit()
        db.refresh(trip)
        return trip
    return _make_trip

@pytest.fixture
def add_rate(db):
    def _add_rate(rate_key, value, category="GLOBAL"):
        setting = RateSetting(rate_key=rate_key, category=category, value=Decimal(str(value)))
        db.add(setting)
        db.commit()
        return setting
    return _add_rate

@pytest.fixture
def add_events(db):
    """Store raw events one second apart, bypassing the ingestion gate."""
    def _add_events(trip_id, event_types, start=BASE_TIME):
        for index, event_type in enumerate(event_types):
            db.add(TripEvent(trip_id=trip_id, event_type=event_type,
                             at=start + timedelta(seconds=index)))
        db.commit()
    return _add_events

@pytest.fixture
def make_template(db):
    def _make_template(**fields):
        template = RateTemplate(**fields)
        db.add(template)
        db.commit()
        db.refresh(template)
        return template
    return _make_template
