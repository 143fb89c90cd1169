"""Trip costing passes.

Three writers share the trip's costing fields:

* ``apply_cost_impact`` - the incremental fast path run for every newly
  accepted checkpoint. Its totals are provisional.
* ``recompute_add_on_rates`` - full recompute from the event log and the
  configured surcharge rates. This is the authoritative figure and overwrites
  whatever the fast path left behind.
* ``recalc_trip_totals`` - on-demand reconciliation against the trip's rate
  template, used when rates are missing or the template changes.
"""
import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .config import config
from .exceptions import TripNotFound
from .models import EventType, Trip
from .numeric import (
    ZERO, money, optional_money, optional_rate, rate, safe_divide,
    to_decimal, to_nullable_decimal
)
from .persistence import count_events_by_type, get_trip, lookup_rate, update_trip

logger = logging.getLogger(__name__)

# Flat cost applied the moment a checkpoint is accepted
EVENT_COST_DELTAS = {
    EventType.ARRIVED_PICKUP: Decimal("30"),
    EventType.ARRIVED_DELIVERY: Decimal("30"),
    EventType.CROSSED_BORDER: Decimal("15"),
    EventType.DROP_HOOK: Decimal("15"),
}

EVENT_COUNTERS = {
    EventType.CROSSED_BORDER: "border_crossings",
    EventType.ARRIVED_PICKUP: "pickups",
    EventType.ARRIVED_DELIVERY: "deliveries",
    EventType.DROP_HOOK: "drop_hooks",
}

# Surcharge rate keys: (primary, legacy)
SURCHARGE_RATE_KEYS = {
    EventType.CROSSED_BORDER: ("BORDER_CROSSING_RATE", "BC_PER"),
    EventType.ARRIVED_PICKUP: ("PICKUP_RATE", "PICK_PER"),
    EventType.ARRIVED_DELIVERY: ("DELIVERY_RATE", "DEL_PER"),
    EventType.DROP_HOOK: ("DROP_HOOK_RATE", "DH_PER"),
}

def cost_delta_for(event_type) -> Decimal:
    return EVENT_COST_DELTAS.get(EventType(event_type), ZERO)

def revenue_basis(trip: Trip) -> Decimal:
    """Expected revenue, falling back to booked revenue, then 0."""
    if trip.expected_revenue is not None:
        return to_decimal(trip.expected_revenue)
    return to_decimal(trip.revenue)

def margin_for(profit: Decimal, basis: Decimal) -> Decimal:
    if basis <= 0:
        return ZERO
    return safe_divide(profit, basis)

def apply_cost_impact(db: Session, trip: Trip, event_type) -> Trip:
    """Fast-path costing for one newly accepted checkpoint."""
    event_type = EventType(event_type)
    delta = cost_delta_for(event_type)

    total_cost = to_decimal(trip.total_cost) + delta
    basis = revenue_basis(trip)
    profit = basis - total_cost

    fields = {
        "total_cost": money(total_cost),
        "profit": money(profit),
        "margin_pct": rate(margin_for(profit, basis)),
    }
    counter = EVENT_COUNTERS.get(event_type)
    if counter:
        fields[counter] = (getattr(trip, counter) or 0) + 1

    update_trip(db, trip, fields)
    logger.debug("Trip %s cost impact %s for %s", trip.id, delta, event_type.value)
    return trip

def load_surcharge_rates(db: Session, category: Optional[str] = None) -> Dict[EventType, Decimal]:
    """Current per-event surcharge for each counted event type (0 when unset)."""
    category = category or config.rate_category
    rates = {}
    for event_type, keys in SURCHARGE_RATE_KEYS.items():
        value = lookup_rate(db, keys, category)
        rates[event_type] = value if value is not None else ZERO
    return rates

def recompute_add_on_rates(db: Session, trip_id: int, category: Optional[str] = None) -> Trip:
    """Rebuild the variable per-mile costing of a trip from its event log.

    Counts are recounted from stored events rather than read from the trip's
    counters, so calling this repeatedly always converges on the same values.
    """
    trip = get_trip(db, trip_id)
    if trip is None:
        raise TripNotFound(trip_id)

    counts = count_events_by_type(db, trip_id)
    surcharges = load_surcharge_rates(db, category)

    add_on_dollars = ZERO
    for event_type, surcharge in surcharges.items():
        add_on_dollars += counts.get(event_type.value, 0) * surcharge

    miles = to_decimal(trip.miles)
    add_on_cpm = safe_divide(add_on_dollars, miles) if miles > 0 else ZERO
    total_variable_cpm = to_decimal(trip.wage_cpm) + to_decimal(trip.rolling_cpm) + add_on_cpm
    variable_cost = total_variable_cpm * miles

    if trip.fixed_cpm is not None:
        fixed_cost = to_decimal(trip.fixed_cpm) * miles
    else:
        fixed_cost = to_decimal(trip.fixed_cost)

    total_cost = variable_cost + fixed_cost
    basis = revenue_basis(trip)
    profit = basis - total_cost
    total_cpm = to_decimal(trip.fixed_cpm) + total_variable_cpm

    fields = {
        "add_ons_cpm": rate(add_on_cpm),
        "total_variable_cpm": rate(total_variable_cpm),
        "total_cpm": rate(total_cpm),
        "variable_cost": money(variable_cost),
        "fixed_cost": money(fixed_cost),
        "total_cost": money(total_cost),
        "profit": money(profit),
        "margin_pct": rate(margin_for(profit, basis)),
    }
    for event_type, counter in EVENT_COUNTERS.items():
        fields[counter] = counts.get(event_type.value, 0)

    try:
        update_trip(db, trip, fields)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(trip)

    logger.info(
        "Recomputed add-ons for trip %s: add-on dollars %s, total cost %s",
        trip_id, add_on_dollars, fields["total_cost"]
    )
    return trip

def _cpm_snapshot(trip: Trip) -> Dict[str, Optional[Decimal]]:
    return {
        "fixedCPM": to_nullable_decimal(trip.fixed_cpm),
        "wageCPM": to_nullable_decimal(trip.wage_cpm),
        "addOnsCPM": to_nullable_decimal(trip.add_ons_cpm),
        "rollingCPM": to_nullable_decimal(trip.rolling_cpm),
    }

def _as_display(values: Dict[str, Optional[Decimal]]) -> Dict[str, Optional[float]]:
    return {key: None if value is None else float(value) for key, value in values.items()}

def recalc_trip_totals(db: Session, trip_id: int) -> Dict:
    """Reconcile a trip's per-mile rates and totals against its rate template.

    Returns the trip plus ``before``/``after`` snapshots and the template that
    was applied, if any. Snapshot margins are percentages; the stored
    ``margin_pct`` stays a fraction like every other costing pass writes it.
    """
    trip = get_trip(db, trip_id)
    if trip is None:
        raise TripNotFound(trip_id)

    miles = to_decimal(trip.miles)
    revenue = to_nullable_decimal(trip.revenue)
    stored_margin = to_nullable_decimal(trip.margin_pct)

    before = dict(_cpm_snapshot(trip))
    before.update({
        "totalCPM": to_nullable_decimal(trip.total_cpm),
        "totalCost": to_nullable_decimal(trip.total_cost),
        "revenue": revenue,
        "profit": to_nullable_decimal(trip.profit),
        "marginPct": None if stored_margin is None else stored_margin * 100,
    })

    cpms = _cpm_snapshot(trip)
    template = trip.rate_ref
    rate_applied = None
    if template is not None and any(value is None for value in cpms.values()):
        cpms = {
            "fixedCPM": to_decimal(template.fixed_cpm),
            "wageCPM": to_decimal(template.wage_cpm),
            "addOnsCPM": to_decimal(template.add_ons_cpm),
            "rollingCPM": to_decimal(template.rolling_cpm),
        }
        label = " • ".join(part for part in (template.type, template.zone) if part) or "Rate"
        rate_applied = {"id": template.id, "label": label}

    present = [value for value in cpms.values() if value is not None]
    total_cpm = sum(present, ZERO) if present else None
    total_cost = miles * total_cpm if total_cpm is not None else None
    profit = revenue - total_cost if revenue is not None and total_cost is not None else None
    margin_fraction = None
    if revenue is not None and revenue != 0:
        margin_fraction = safe_divide(profit if profit is not None else ZERO, revenue)

    fields = {
        "fixed_cpm": optional_rate(cpms["fixedCPM"]),
        "wage_cpm": optional_rate(cpms["wageCPM"]),
        "add_ons_cpm": optional_rate(cpms["addOnsCPM"]),
        "rolling_cpm": optional_rate(cpms["rollingCPM"]),
        "total_cpm": optional_rate(total_cpm),
        "total_cost": optional_money(total_cost),
        "profit": optional_money(profit),
        # Stored as a fraction like the other costing passes; snapshots below carry the percentage
        "margin_pct": optional_rate(margin_fraction),
    }
    if total_cost is not None:
        variable_cpm = sum(
            (value for key, value in cpms.items() if key != "fixedCPM" and value is not None), ZERO
        )
        fixed_cost = to_decimal(cpms["fixedCPM"]) * miles
        fields["total_variable_cpm"] = rate(variable_cpm)
        fields["fixed_cost"] = money(fixed_cost)
        fields["variable_cost"] = money(fields["total_cost"] - money(fixed_cost))

    try:
        update_trip(db, trip, fields)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(trip)

    after = dict(cpms)
    after.update({
        "totalCPM": total_cpm,
        "totalCost": total_cost,
        "revenue": revenue,
        "profit": profit,
        "marginPct": None if margin_fraction is None else margin_fraction * 100,
    })

    logger.info("Recalculated totals for trip %s (rate applied: %s)", trip_id,
                rate_applied["label"] if rate_applied else "none")
    return {
        "trip": trip,
        "before": _as_display(before),
        "after": _as_display(after),
        "rate_applied": rate_applied,
    }
