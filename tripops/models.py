import enum

from sqlalchemy import (
    Column, Integer, String, Float, Numeric, DateTime, ForeignKey, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

MONEY = Numeric(14, 2)
RATE = Numeric(12, 6)

class EventType(str, enum.Enum):
    """Closed set of checkpoint types a driver can log."""
    TRIP_START = "TRIP_START"
    ARRIVED_PICKUP = "ARRIVED_PICKUP"
    LEFT_PICKUP = "LEFT_PICKUP"
    ARRIVED_DELIVERY = "ARRIVED_DELIVERY"
    LEFT_DELIVERY = "LEFT_DELIVERY"
    CROSSED_BORDER = "CROSSED_BORDER"
    DROP_HOOK = "DROP_HOOK"
    TRIP_FINISHED = "TRIP_FINISHED"

class Driver(Base):
    __tablename__ = "drivers"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    type = Column(String(32))
    home_base = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Unit(Base):
    __tablename__ = "units"
    id = Column(Integer, primary_key=True)
    code = Column(String(64), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class RateTemplate(Base):
    __tablename__ = "rates"
    id = Column(Integer, primary_key=True)
    type = Column(String(32))
    zone = Column(String(64))
    fixed_cpm = Column(RATE, nullable=False, default=0)
    wage_cpm = Column(RATE, nullable=False, default=0)
    add_ons_cpm = Column(RATE, nullable=False, default=0)
    rolling_cpm = Column(RATE, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class RateSetting(Base):
    __tablename__ = "rate_settings"
    __table_args__ = (UniqueConstraint("rate_key", "category", name="uq_rate_settings_key_category"),)
    id = Column(Integer, primary_key=True)
    rate_key = Column(String(64), nullable=False)
    category = Column(String(64), nullable=False, default="GLOBAL")
    value = Column(Numeric(14, 6), nullable=False)
    unit = Column(String(16))
    note = Column(String(255))

class Trip(Base):
    __tablename__ = "trips"
    id = Column(Integer, primary_key=True)
    driver = Column(String(255))
    unit = Column(String(64))
    driver_id = Column(Integer, ForeignKey("drivers.id"))
    unit_id = Column(Integer, ForeignKey("units.id"))
    rate_id = Column(Integer, ForeignKey("rates.id"))
    status = Column(String(32), nullable=False, default="Booked")

    miles = Column(Numeric(10, 2), nullable=False, default=0)
    revenue = Column(MONEY)
    expected_revenue = Column(MONEY)

    # Per-mile rate components
    fixed_cpm = Column(RATE)
    wage_cpm = Column(RATE)
    rolling_cpm = Column(RATE)
    add_ons_cpm = Column(RATE)
    total_variable_cpm = Column(RATE)
    total_cpm = Column(RATE)

    # Derived totals
    variable_cost = Column(MONEY)
    fixed_cost = Column(MONEY)
    total_cost = Column(MONEY)
    profit = Column(MONEY)
    margin_pct = Column(RATE)

    # Event counters
    border_crossings = Column(Integer, nullable=False, default=0)
    pickups = Column(Integer, nullable=False, default=0)
    deliveries = Column(Integer, nullable=False, default=0)
    drop_hooks = Column(Integer, nullable=False, default=0)

    # Operational state
    last_check_in_at = Column(DateTime(timezone=True))
    eta_prediction = Column(DateTime(timezone=True))
    next_commitment_at = Column(DateTime(timezone=True))
    delay_risk_pct = Column(Float)
    trip_start = Column(DateTime(timezone=True))
    trip_end = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    driver_ref = relationship("Driver")
    unit_ref = relationship("Unit")
    rate_ref = relationship("RateTemplate")
    stops = relationship("TripStop", order_by="TripStop.seq", back_populates="trip")
    events = relationship("TripEvent", order_by="TripEvent.at", back_populates="trip")

class TripStop(Base):
    __tablename__ = "trip_stops"
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    stop_type = Column(String(32), nullable=False)
    name = Column(String(255))
    city = Column(String(128))
    state = Column(String(64))
    scheduled_at = Column(DateTime(timezone=True))
    trip = relationship("Trip", back_populates="stops")

class TripEvent(Base):
    __tablename__ = "trip_events"
    # Dedup key: at most one stored event per (trip, type, second)
    __table_args__ = (UniqueConstraint("trip_id", "event_type", "at", name="uq_trip_events_dedup"),)
    id = Column(Integer, primary_key=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    event_type = Column(String(32), nullable=False)
    stop_id = Column(String(64))
    stop_label = Column(String(255))
    odometer_miles = Column(Float)
    lat = Column(Float)
    lon = Column(Float)
    notes = Column(Text)
    at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    trip = relationship("Trip", back_populates="events")
