import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .costing import apply_cost_impact
from .exceptions import InvalidEventType, TripNotFound
from .models import EventType, Trip, TripEvent
from .numeric import finite_or_none, truncate_to_second
from .persistence import create_event, find_event, get_trip
from .status import project_status

logger = logging.getLogger(__name__)

@dataclass
class CheckpointResult:
    trip: Trip
    event: TripEvent
    replayed: bool = False

def parse_event_type(value) -> EventType:
    try:
        return EventType(value)
    except ValueError:
        raise InvalidEventType(value) from None

def _clean_text(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None

def default_notes(odometer_miles: Optional[float], stop_label: Optional[str]) -> Optional[str]:
    if odometer_miles is not None:
        return f"Odometer: {odometer_miles:.1f} mi"
    return stop_label

def ingest_checkpoint(
    db: Session,
    trip_id: int,
    event_type,
    stop_id=None,
    stop_label=None,
    odometer_miles=None,
    lat=None,
    lon=None,
    notes=None,
    submitted_at: Optional[datetime] = None
) -> CheckpointResult:
    """Log one checkpoint for a trip and apply its costing and status effects.

    The submission time is floored to the second and, together with the trip
    and event type, forms the dedup key. A submission matching a stored event
    is a replay: the stored event and the trip's current state are returned and
    nothing is written. Auxiliary fields that fail validation (negative or
    non-finite odometer, non-finite coordinates) are stored as absent.

    Raises InvalidEventType for types outside the closed set and TripNotFound
    for unknown trips.
    """
    event_type = parse_event_type(event_type)

    trip = get_trip(db, trip_id)
    if trip is None:
        raise TripNotFound(trip_id)

    at = truncate_to_second(submitted_at or datetime.now(timezone.utc))

    existing = find_event(db, trip_id, event_type.value, at)
    if existing is not None:
        logger.info("Duplicate %s for trip %s at %s, replaying", event_type.value, trip_id, at.isoformat())
        return CheckpointResult(trip=trip, event=existing, replayed=True)

    odometer_miles = finite_or_none(odometer_miles, minimum=0)
    stop_label = _clean_text(stop_label)

    try:
        event = create_event(
            db,
            trip_id=trip_id,
            event_type=event_type.value,
            stop_id=None if stop_id is None else str(stop_id),
            stop_label=stop_label,
            odometer_miles=odometer_miles,
            lat=finite_or_none(lat),
            lon=finite_or_none(lon),
            notes=_clean_text(notes) or default_notes(odometer_miles, stop_label),
            at=at
        )
    except IntegrityError:
        # A concurrent submission stored the same key first
        db.rollback()
        existing = find_event(db, trip_id, event_type.value, at)
        if existing is None:
            raise
        logger.info("Lost dedup race for %s on trip %s, replaying", event_type.value, trip_id)
        return CheckpointResult(trip=get_trip(db, trip_id), event=existing, replayed=True)

    try:
        apply_cost_impact(db, trip, event_type)
        project_status(db, trip_id, event_type, at)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(trip)
    db.refresh(event)
    logger.info("Logged %s for trip %s (total cost %s, delay risk %s)",
                event_type.value, trip_id, trip.total_cost, trip.delay_risk_pct)
    return CheckpointResult(trip=trip, event=event)
