"""Operational status projection for trips.

Every checkpoint moves the trip through a small state machine. The rules live
in ``TRANSITIONS`` (event type -> ETA rule, delay-risk rule, status) and the
schedule pressure of the upcoming stop is applied afterwards by ``clamp_risk``.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from .config import config
from .exceptions import TripNotFound
from .models import EventType, Trip, TripStop
from .numeric import as_float, as_utc
from .persistence import get_events_for_trip, get_trip_with_stops, update_trip

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "In Progress"
STATUS_COMPLETED = "Completed"

# Starting risk for a trip that has never been projected
DEFAULT_PREVIOUS_RISK = 0.15

EtaRule = Callable[[datetime, Optional[datetime], Optional[datetime]], Optional[datetime]]

def _upcoming_else_last(event_at, upcoming_at, last_at):
    return upcoming_at or last_at

def _last_stop(event_at, upcoming_at, last_at):
    return last_at

def _event_time(event_at, upcoming_at, last_at):
    return event_at

def _upcoming_else_event(event_at, upcoming_at, last_at):
    return upcoming_at or event_at

@dataclass(frozen=True)
class Transition:
    eta: EtaRule
    risk: Callable[[float], float]
    status: Optional[str] = None
    closes_trip: bool = False

TRANSITIONS: Dict[EventType, Transition] = {
    EventType.TRIP_START: Transition(_upcoming_else_last, lambda prev: 0.12, STATUS_IN_PROGRESS),
    EventType.CROSSED_BORDER: Transition(_upcoming_else_last, lambda prev: min(0.35, prev + 0.05)),
    EventType.ARRIVED_DELIVERY: Transition(_last_stop, lambda prev: 0.08),
    EventType.LEFT_DELIVERY: Transition(_last_stop, lambda prev: 0.05, STATUS_COMPLETED, True),
    EventType.TRIP_FINISHED: Transition(_event_time, lambda prev: 0.0, STATUS_COMPLETED, True),
}

DEFAULT_TRANSITION = Transition(_upcoming_else_event, lambda prev: max(0.05, prev - 0.03))

def transition_for(event_type) -> Transition:
    return TRANSITIONS.get(EventType(event_type), DEFAULT_TRANSITION)

def clamp_risk(risk: float, minutes_to_stop: Optional[float]) -> float:
    """Apply schedule pressure from the upcoming stop, then bound to [0, 1]."""
    if risk is None or not math.isfinite(risk):
        risk = 0.0
    if minutes_to_stop is not None:
        if minutes_to_stop <= 0:
            risk = max(risk, 0.6)
        elif minutes_to_stop < 60:
            risk = max(risk, 0.35)
        elif minutes_to_stop < 120:
            risk = max(risk, 0.22)
        else:
            risk = min(risk, 0.15)
    return round(min(1.0, max(0.0, risk)), 4)

def upcoming_stop(stops: List[TripStop], event_at: datetime) -> Optional[TripStop]:
    """First stop in sequence scheduled strictly after ``event_at``."""
    for stop in stops:
        scheduled = as_utc(stop.scheduled_at)
        if scheduled is not None and scheduled > event_at:
            return stop
    return None

def last_stop_time(stops: List[TripStop]) -> Optional[datetime]:
    """Scheduled time of the final stop in sequence, which may be unset."""
    if not stops:
        return None
    return as_utc(stops[-1].scheduled_at)

def project_status(db: Session, trip_id: int, event_type, event_at: datetime) -> Optional[Trip]:
    """Update delay risk, ETA, next commitment and status for one checkpoint.

    Silently does nothing when the trip does not exist. The caller owns the
    transaction; changes are flushed, not committed.
    """
    trip = get_trip_with_stops(db, trip_id)
    if trip is None:
        logger.debug("Status projection skipped, trip %s not found", trip_id)
        return None

    event_type = EventType(event_type)
    event_at = as_utc(event_at)
    stops = sorted(trip.stops, key=lambda stop: stop.seq)
    transition = transition_for(event_type)

    upcoming = upcoming_stop(stops, event_at)
    upcoming_at = as_utc(upcoming.scheduled_at) if upcoming else None
    eta = transition.eta(event_at, upcoming_at, last_stop_time(stops)) or event_at

    previous_risk = as_float(trip.delay_risk_pct, DEFAULT_PREVIOUS_RISK)
    minutes_to_stop = (upcoming_at - event_at).total_seconds() / 60 if upcoming_at else None
    risk = clamp_risk(transition.risk(previous_risk), minutes_to_stop)

    fields = {
        "last_check_in_at": event_at,
        "eta_prediction": eta,
        "delay_risk_pct": risk,
    }
    if transition.status:
        fields["status"] = transition.status

    if event_type == EventType.TRIP_START:
        if trip.trip_start is None:
            fields["trip_start"] = event_at
        if stops and stops[0].scheduled_at is not None:
            fields["next_commitment_at"] = as_utc(stops[0].scheduled_at)

    if transition.closes_trip:
        fields["trip_end"] = event_at
        fields["next_commitment_at"] = None
    elif upcoming_at is not None:
        fields["next_commitment_at"] = upcoming_at

    update_trip(db, trip, fields)
    logger.debug("Trip %s projected: status=%s risk=%.2f eta=%s",
                 trip_id, trip.status, risk, eta.isoformat())
    return trip

def evaluate_trip_risk(db: Session, trip_id: int, now: Optional[datetime] = None) -> Dict:
    """Operational alerts for a trip based on its projected state."""
    trip = get_trip_with_stops(db, trip_id)
    if trip is None:
        raise TripNotFound(trip_id)

    now = as_utc(now) if now else datetime.now(timezone.utc)
    delay_risk = as_float(trip.delay_risk_pct, 0.0)

    alerts = []
    if delay_risk >= config.high_risk_threshold:
        alerts.append(f"Delay risk {delay_risk * 100:.0f}%")
    if trip.last_check_in_at is None:
        alerts.append("No check-in recorded")
    if trip.next_commitment_at is not None:
        minutes_remaining = int((as_utc(trip.next_commitment_at) - now).total_seconds() // 60)
        if minutes_remaining < config.commitment_alert_minutes:
            alerts.append(f"Next commitment inside {minutes_remaining} minutes")

    return {
        "delay_risk_pct": delay_risk,
        "eta": as_utc(trip.eta_prediction),
        "alerts": alerts,
    }

# Stop completion is inferred from these checkpoint types
COMPLETION_EVENT_TYPES = {
    EventType.ARRIVED_PICKUP.value,
    EventType.ARRIVED_DELIVERY.value,
    EventType.DROP_HOOK.value,
    EventType.CROSSED_BORDER.value,
}

STOP_TYPE_LABELS = {
    "PICKUP": "Pickup",
    "DELIVERY": "Delivery",
    "DROP_HOOK": "Drop & Hook",
    "BORDER": "Border",
}

def format_stop_label(stop: TripStop) -> str:
    parts = [f"Stop {stop.seq}", STOP_TYPE_LABELS.get(stop.stop_type, stop.stop_type or "Stop")]
    location = " · ".join(value for value in (stop.name, stop.city, stop.state) if value and value.strip())
    if location:
        parts.append(location)
    if stop.scheduled_at is not None:
        parts.append(as_utc(stop.scheduled_at).strftime("%b %d %H:%M UTC"))
    return " - ".join(parts)

def margin_badge(margin: Optional[float]) -> Dict[str, str]:
    if margin is None:
        return {"text": "No margin data", "tone": "yellow"}
    if margin < 0.05:
        return {"text": "Margin risk", "tone": "red"}
    if margin < 0.1:
        return {"text": "Tight margin", "tone": "yellow"}
    return {"text": "Strong margin", "tone": "green"}

def operational_summary(db: Session, trip_id: int, now: Optional[datetime] = None) -> Dict:
    """Dispatcher-facing view of a trip's operational state."""
    risk = evaluate_trip_risk(db, trip_id, now)
    trip = get_trip_with_stops(db, trip_id)

    completed_stop_ids = {
        event.stop_id for event in get_events_for_trip(db, trip_id)
        if event.stop_id and event.event_type in COMPLETION_EVENT_TYPES
    }
    next_stop = next(
        (stop for stop in sorted(trip.stops, key=lambda s: s.seq) if str(stop.id) not in completed_stop_ids),
        None
    )

    return {
        "status": trip.status,
        "next_commitment_label": format_stop_label(next_stop) if next_stop else "All stops completed",
        "next_commitment_at": as_utc(trip.next_commitment_at),
        "delay_risk_pct": risk["delay_risk_pct"],
        "eta": risk["eta"],
        "margin_badge": margin_badge(as_float(trip.margin_pct, None)),
        "alerts": risk["alerts"],
    }
