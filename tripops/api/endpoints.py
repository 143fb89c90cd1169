import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from ..config import config
from ..db import get_db
from ..costing import recompute_add_on_rates, recalc_trip_totals
from ..exceptions import InvalidEventType, TripNotFound
from ..ingestion import ingest_checkpoint
from ..persistence import get_event_summary, get_events_for_trip, get_trip, list_trip_events
from ..schemas import CheckpointRequest
from ..serializers import (
    feed_event, isoformat, logged_event, trip_costing_snapshot, trip_operational_fields
)
from ..status import evaluate_trip_risk, operational_summary
from ..wsmanager import manager

logger = logging.getLogger(__name__)

router = APIRouter()

def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})

@router.post("/trips/{trip_id}/events")
async def log_checkpoint(
    trip_id: int,
    request: CheckpointRequest,
    db: Session = Depends(get_db)
):
    """Log a checkpoint and return the recomputed trip costing."""
    try:
        # Blocking database work stays off the event loop
        result = await run_in_threadpool(
            ingest_checkpoint,
            db,
            trip_id,
            request.event_type,
            stop_id=request.stop_id,
            stop_label=request.stop_label,
            odometer_miles=request.odometer_miles,
            lat=request.lat,
            lon=request.lon,
            notes=request.notes
        )
    except InvalidEventType as e:
        return _failure(400, str(e))
    except TripNotFound as e:
        return _failure(404, str(e))
    except Exception:
        logger.exception("Failed to log trip event for trip %s", trip_id)
        return _failure(500, "Unable to log event")

    snapshot = trip_costing_snapshot(result.trip)
    if not result.replayed:
        await manager.broadcast_trip(snapshot)

    return {
        "success": True,
        "trip": snapshot,
        "event": logged_event(result.event)
    }

@router.get("/trips/{trip_id}")
def get_trip_snapshot(trip_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get the costing snapshot and operational fields of a trip."""
    trip = get_trip(db, trip_id)
    if trip is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")

    data = trip_costing_snapshot(trip)
    data["operations"] = trip_operational_fields(trip)
    return data

@router.get("/trips/{trip_id}/events")
def get_trip_events(trip_id: int, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Get the event log of a trip, oldest first."""
    if get_trip(db, trip_id) is None:
        raise HTTPException(status_code=404, detail=f"Trip {trip_id} not found")
    return [logged_event(event) for event in get_events_for_trip(db, trip_id)]

@router.post("/trips/{trip_id}/recalc-add-ons")
def recalc_add_ons(trip_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Recompute add-on rates and totals from the full event log."""
    try:
        trip = recompute_add_on_rates(db, trip_id)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception("Add-on recompute failed for trip %s", trip_id)
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    return {"success": True, "trip": trip_costing_snapshot(trip)}

@router.post("/trips/{trip_id}/recalc-totals")
def recalc_totals(trip_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Reconcile trip totals against its rate template."""
    try:
        result = recalc_trip_totals(db, trip_id)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception("Totals recalculation failed for trip %s", trip_id)
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    return {
        "success": True,
        "trip": trip_costing_snapshot(result["trip"]),
        "before": result["before"],
        "after": result["after"],
        "rateApplied": result["rate_applied"]
    }

@router.get("/trips/{trip_id}/risk")
def get_trip_risk(trip_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get delay risk, ETA and operational alerts for a trip."""
    try:
        risk = evaluate_trip_risk(db, trip_id)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "delayRiskPct": risk["delay_risk_pct"],
        "eta": isoformat(risk["eta"]),
        "alerts": risk["alerts"]
    }

@router.get("/trips/{trip_id}/status")
def get_trip_status(trip_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get the dispatcher view of a trip's operational state."""
    try:
        summary = operational_summary(db, trip_id)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "status": summary["status"],
        "nextCommitmentLabel": summary["next_commitment_label"],
        "nextCommitmentAt": isoformat(summary["next_commitment_at"]),
        "delayRiskPct": summary["delay_risk_pct"],
        "eta": isoformat(summary["eta"]),
        "marginBadge": summary["margin_badge"],
        "alerts": summary["alerts"]
    }

@router.get("/trip-events")
def get_trip_event_feed(
    db: Session = Depends(get_db),
    trip_id: Optional[int] = Query(None, alias="tripId", description="Filter by trip ID"),
    driver: Optional[str] = Query(None, description="Filter by driver name"),
    unit: Optional[str] = Query(None, description="Filter by unit code"),
    event_type: Optional[str] = Query(None, alias="eventType", description="Filter by event type"),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit, description="Number of events to return"),
    offset: int = Query(0, ge=0, description="Number of events to skip")
) -> Dict[str, Any]:
    """Get the latest checkpoints across trips with a summary."""
    try:
        events = list_trip_events(db, trip_id, driver, unit, event_type, limit, offset)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    summary = get_event_summary(events)
    return {
        "events": [feed_event(event) for event in events],
        "summary": {
            "uniqueTrips": summary["unique_trips"],
            "borderCrossings": summary["border_crossings"],
            "completedTrips": summary["completed_trips"]
        }
    }
