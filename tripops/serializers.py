from typing import Any, Dict, Optional
from datetime import datetime
from .models import Trip, TripEvent
from .numeric import as_float, as_utc

def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None

def trip_costing_snapshot(trip: Trip) -> Dict[str, Any]:
    """Costing view of a trip returned with every checkpoint response."""
    return {
        "id": trip.id,
        "driver": trip.driver,
        "unit": trip.unit,
        "status": trip.status,
        "miles": as_float(trip.miles),
        "revenue": as_float(trip.revenue),
        "expectedRevenue": as_float(trip.expected_revenue),
        "fixedCPM": as_float(trip.fixed_cpm),
        "wageCPM": as_float(trip.wage_cpm),
        "rollingCPM": as_float(trip.rolling_cpm),
        "addOnsCPM": as_float(trip.add_ons_cpm),
        "totalVariableCPM": as_float(trip.total_variable_cpm),
        "totalCPM": as_float(trip.total_cpm),
        "variableCost": as_float(trip.variable_cost),
        "fixedCost": as_float(trip.fixed_cost),
        "totalCost": as_float(trip.total_cost),
        "profit": as_float(trip.profit),
        "marginPct": as_float(trip.margin_pct),
        "borderCrossings": trip.border_crossings or 0,
        "pickups": trip.pickups or 0,
        "deliveries": trip.deliveries or 0,
        "dropHooks": trip.drop_hooks or 0,
    }

def trip_operational_fields(trip: Trip) -> Dict[str, Any]:
    return {
        "status": trip.status,
        "lastCheckInAt": isoformat(trip.last_check_in_at),
        "etaPrediction": isoformat(trip.eta_prediction),
        "nextCommitmentAt": isoformat(trip.next_commitment_at),
        "delayRiskPct": as_float(trip.delay_risk_pct, None),
        "tripStart": isoformat(trip.trip_start),
        "tripEnd": isoformat(trip.trip_end),
    }

def logged_event(event: TripEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "tripId": event.trip_id,
        "eventType": event.event_type,
        "stopId": event.stop_id,
        "stopLabel": event.stop_label,
        "notes": event.notes,
        "odometerMiles": event.odometer_miles,
        "lat": event.lat,
        "lon": event.lon,
        "at": isoformat(event.at),
    }

def feed_event(event: TripEvent) -> Dict[str, Any]:
    """Event feed row with a short description of its trip."""
    data = logged_event(event)
    trip = event.trip
    data["trip"] = {
        "id": trip.id,
        "driver": trip.driver,
        "unit": trip.unit,
        "status": trip.status,
    } if trip is not None else None
    return data
