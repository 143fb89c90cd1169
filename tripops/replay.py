"""Backfill checkpoints from a CSV export.

Expected columns: ``trip_id``, ``event_type``, ``at``; optional ``stop_id``,
``stop_label``, ``odometer_miles``, ``lat``, ``lon``, ``notes``. Rows go
through the same dedup gate as live submissions, so re-running a file is
harmless. Every trip touched is reconciled with a full add-on recompute at
the end.
"""
import logging
import sys
from typing import Dict, Optional

import pandas as pd

from .costing import recompute_add_on_rates
from .db import SessionLocal
from .exceptions import TripOpsError
from .ingestion import ingest_checkpoint

logger = logging.getLogger(__name__)

OPTIONAL_COLUMNS = ["stop_id", "stop_label", "odometer_miles", "lat", "lon", "notes"]

def _value(row, column) -> Optional[object]:
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    return value

def load_checkpoints(csv_path: str) -> pd.DataFrame:
    df = pd.read_csv(csv_path, dtype={'stop_id': str, 'stop_label': str, 'notes': str})
    missing = {"trip_id", "event_type", "at"} - set(df.columns)
    if missing:
        raise ValueError(f"Checkpoint CSV missing columns: {sorted(missing)}")
    for column in OPTIONAL_COLUMNS:
        if column not in df.columns:
            df[column] = None
    df['at'] = pd.to_datetime(df['at'], utc=True, format='ISO8601', errors='coerce')
    return df.sort_values(['trip_id', 'at'])

def _trip_id(value) -> Optional[int]:
    if value is None or pd.isna(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else None

def replay_checkpoints(csv_path: str, session_factory=SessionLocal) -> Dict[str, int]:
    """Submit every row of a checkpoint CSV and reconcile the affected trips.

    Rows with an unusable trip id or timestamp, an unknown trip or an
    unsupported event type are counted as rejected. Trips touched before an
    unexpected failure are still reconciled.
    """
    df = load_checkpoints(csv_path)
    logger.info("Replaying %d checkpoints from %s", len(df), csv_path)

    summary = {"accepted": 0, "replayed": 0, "rejected": 0, "trips": 0}
    touched = set()

    db = session_factory()
    try:
        for _, row in df.iterrows():
            trip_id = _trip_id(row['trip_id'])
            if trip_id is None or pd.isna(row['at']):
                logger.warning("Rejected checkpoint row with trip id %r at %r", row['trip_id'], row['at'])
                summary["rejected"] += 1
                continue

            stop_id = _value(row, 'stop_id')
            odometer = _value(row, 'odometer_miles')
            lat = _value(row, 'lat')
            lon = _value(row, 'lon')
            try:
                result = ingest_checkpoint(
                    db,
                    trip_id,
                    _value(row, 'event_type'),
                    stop_id=None if stop_id is None else str(stop_id),
                    stop_label=_value(row, 'stop_label'),
                    odometer_miles=None if odometer is None else float(odometer),
                    lat=None if lat is None else float(lat),
                    lon=None if lon is None else float(lon),
                    notes=_value(row, 'notes'),
                    submitted_at=row['at'].to_pydatetime()
                )
            except TripOpsError as e:
                logger.warning("Rejected checkpoint row for trip %s: %s", trip_id, e)
                summary["rejected"] += 1
                continue

            touched.add(trip_id)
            if result.replayed:
                summary["replayed"] += 1
            else:
                summary["accepted"] += 1
    finally:
        try:
            for trip_id in sorted(touched):
                recompute_add_on_rates(db, trip_id)
            summary["trips"] = len(touched)
        finally:
            db.close()

    logger.info("Replay finished: %s", summary)
    return summary

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: python -m tripops.replay <checkpoints.csv>")
        sys.exit(2)
    print(replay_checkpoints(sys.argv[1]))
