from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload
from .models import Trip, TripEvent, RateSetting, EventType
from .numeric import to_nullable_decimal

def get_trip(db: Session, trip_id: int) -> Optional[Trip]:
    """Read one trip by id."""
    return db.get(Trip, trip_id)

def get_trip_with_stops(db: Session, trip_id: int) -> Optional[Trip]:
    """Read one trip with its stops loaded in sequence order."""
    return db.query(Trip).options(
        selectinload(Trip.stops)
    ).filter(Trip.id == trip_id).first()

def update_trip(db: Session, trip: Trip, fields: Dict) -> Trip:
    """Apply a partial field set to a trip; the caller owns the commit."""
    for name, value in fields.items():
        if not hasattr(Trip, name):
            raise AttributeError(f"Trip has no field {name!r}")
        setattr(trip, name, value)
    db.flush()
    return trip

def find_event(db: Session, trip_id: int, event_type: str, at: datetime) -> Optional[TripEvent]:
    """Look up a stored event by its dedup key."""
    return db.query(TripEvent).filter(
        TripEvent.trip_id == trip_id,
        TripEvent.event_type == event_type,
        TripEvent.at == at
    ).first()

def create_event(db: Session, **fields) -> TripEvent:
    """Add an event and flush so the dedup constraint is checked immediately."""
    event = TripEvent(**fields)
    db.add(event)
    db.flush()
    return event

def get_events_for_trip(db: Session, trip_id: int) -> List[TripEvent]:
    """All events of a trip, oldest first."""
    return db.query(TripEvent).filter(
        TripEvent.trip_id == trip_id
    ).order_by(TripEvent.at.asc(), TripEvent.id.asc()).all()

def count_events_by_type(db: Session, trip_id: int) -> Dict[str, int]:
    """Recount a trip's events per type straight from the event log."""
    rows = db.query(
        TripEvent.event_type,
        func.count(TripEvent.id).label('count')
    ).filter(TripEvent.trip_id == trip_id).group_by(TripEvent.event_type).all()
    return {event_type: count for event_type, count in rows}

def lookup_rate(db: Session, keys: Sequence[str], category: str = "GLOBAL") -> Optional[Decimal]:
    """Return the first rate setting present among ``keys`` in ``category``."""
    for key in keys:
        setting = db.query(RateSetting).filter(
            RateSetting.rate_key == key,
            RateSetting.category == category
        ).first()
        if setting is not None:
            value = to_nullable_decimal(setting.value)
            if value is not None:
                return value
    return None

def list_trip_events(
    db: Session,
    trip_id: Optional[int] = None,
    driver: Optional[str] = None,
    unit: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
) -> List[TripEvent]:
    """Latest events across trips, with optional filtering."""
    query = db.query(TripEvent).options(selectinload(TripEvent.trip))

    if trip_id:
        query = query.filter(TripEvent.trip_id == trip_id)
    if event_type:
        query = query.filter(TripEvent.event_type == event_type)
    if driver or unit:
        query = query.join(Trip, TripEvent.trip_id == Trip.id)
        if driver:
            query = query.filter(Trip.driver.ilike(f"%{driver}%"))
        if unit:
            query = query.filter(Trip.unit.ilike(f"%{unit}%"))

    return query.order_by(TripEvent.at.desc()).offset(offset).limit(limit).all()

def get_event_summary(events: List[TripEvent]) -> Dict:
    """Summarise an event feed page."""
    completed = {EventType.LEFT_DELIVERY.value, EventType.TRIP_FINISHED.value}
    return {
        'unique_trips': len({event.trip_id for event in events}),
        'border_crossings': sum(1 for e in events if e.event_type == EventType.CROSSED_BORDER.value),
        'completed_trips': sum(1 for e in events if e.event_type in completed)
    }
