"""
Transformation helpers turning Tixr API payloads into datastore rows.

Buyer names, e-mails and phone numbers are never copied into the rows; orders
keep only the Tixr user id.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from integrations.common.logging import setup_integrations_logger
from integrations.common.time import next_day_cutoff, parse_timestamp, to_date, to_utc_iso, utcnow
from integrations.tixr.classifier import to_decimal, to_quantity

logger = setup_integrations_logger("tixr")

LIVE = "LIVE"
PAST = "PAST"

_CENTS = Decimal("0.01")
_PRESERVED_WORDS = {"DJ", "MC", "NYC", "LA", "UK", "USA", "II", "III", "IV"}


# --------------------------------------------------------------------- #
# Events
# --------------------------------------------------------------------- #
def compute_event_status(event_date: Any, *, now: Optional[datetime] = None) -> str:
    """An event is PAST once 04:00 local time the day after it has gone by."""
    if not event_date:
        return LIVE
    current = now or utcnow()
    return PAST if current > next_day_cutoff(event_date) else LIVE


def _title_case(name: str) -> str:
    words = []
    for word in name.split():
        if word.upper() in _PRESERVED_WORDS:
            words.append(word.upper())
        else:
            words.append("-".join(part[:1].upper() + part[1:].lower() for part in word.split("-")))
    return " ".join(words)


def extract_artist(event: Mapping[str, Any]) -> Optional[str]:
    """Name of the best-ranked act of the first lineup that has one."""
    for lineup in event.get("lineups") or []:
        acts = [act for act in (lineup or {}).get("acts") or [] if isinstance(act, dict)]
        ranked = sorted(acts, key=lambda act: act.get("rank") or 999)
        for act in ranked[:1]:
            name = ((act.get("artist") or {}).get("name") or "").strip()
            if name:
                return _title_case(name)
    return None


def transform_event(event: Mapping[str, Any], *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Convert an API event into an ``events`` row (``None`` when it has no id)."""
    raw_id = event.get("id") or event.get("event_id")
    try:
        event_id = int(raw_id)
    except (TypeError, ValueError):
        logger.warning("Skipping event without numeric id", metrics={"id": str(raw_id)[:50]})
        return None

    event_date = None
    if event.get("start_date"):
        try:
            event_date = to_date(event["start_date"]).isoformat()
        except (TypeError, ValueError):
            logger.warning(
                "Event has unparsable start_date",
                metrics={"event_id": event_id, "start_date": str(event["start_date"])[:50]},
            )

    return {
        "event_id": event_id,
        "event_name": event.get("name"),
        "event_date": event_date,
        "event_artist": extract_artist(event),
        "event_status": compute_event_status(event_date, now=now),
        "event_flyer": event.get("flyer_url") or event.get("mobile_image_url") or None,
        "event_updated": to_utc_iso(now or utcnow()),
    }


def transform_events(events: Sequence[Mapping[str, Any]], *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    rows = [transform_event(event, now=now) for event in events or []]
    return [row for row in rows if row is not None]


def should_sync_event(event: Mapping[str, Any], *, now: Optional[datetime] = None) -> bool:
    """LIVE events always sync; PAST events sync until one pass ran after the cutoff."""
    status = event.get("event_status")
    if status == LIVE:
        return True
    if status != PAST:
        return False
    last_synced = event.get("event_order_updated")
    if not last_synced or not event.get("event_date"):
        return True
    try:
        return parse_timestamp(last_synced) < next_day_cutoff(event["event_date"])
    except (TypeError, ValueError):
        return True


# --------------------------------------------------------------------- #
# Orders
# --------------------------------------------------------------------- #
def _item_amounts(order: Mapping[str, Any], item: Mapping[str, Any], item_count: int) -> Dict[str, Decimal]:
    """Split order-level gross/net onto one sale item.

    ``total`` on the item is its gross; net is allocated pro rata to gross.
    """
    order_gross = to_decimal(order.get("gross_sales"))
    order_net = to_decimal(order.get("net"))
    if item.get("total") is not None:
        gross = to_decimal(item.get("total"))
    elif item_count == 1:
        gross = order_gross
    else:
        gross = Decimal("0")

    if item_count == 1:
        net = order_net
    elif order_gross > 0:
        net = order_net * gross / order_gross
    else:
        net = Decimal("0")
    return {
        "gross": gross.quantize(_CENTS, rounding=ROUND_HALF_UP),
        "net": net.quantize(_CENTS, rounding=ROUND_HALF_UP),
    }


def _as_int(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def transform_order(order: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """One ``events_orders`` row per sale item of ``order``."""
    order_id = order.get("order_id") or order.get("id")
    items = [item for item in order.get("sale_items") or [] if isinstance(item, dict)]
    if not order_id or not items:
        return []

    rows: List[Dict[str, Any]] = []
    for item in items:
        if item.get("sale_id") is None:
            logger.warning("Skipping sale item without sale_id", metrics={"order_id": order_id})
            continue
        serials = [
            str(ticket.get("serial_number"))
            for ticket in item.get("tickets") or []
            if isinstance(ticket, dict) and ticket.get("serial_number")
        ]
        amounts = _item_amounts(order, item, len(items))
        rows.append(
            {
                "order_id": str(order_id),
                "event_id": _as_int(order.get("event_id")),
                "order_sale_id": str(item.get("sale_id")),
                "order_tier_id": str(item["tier_id"]) if item.get("tier_id") is not None else None,
                "order_category": item.get("category"),
                "order_quantity": to_quantity(item.get("quantity")),
                "order_sales_item_name": item.get("name"),
                "order_serials": ",".join(serials) or None,
                "order_gross": amounts["gross"],
                "order_net": amounts["net"],
                "order_status": order.get("status"),
                "order_purchase_date": to_utc_iso(order.get("purchase_date")),
                "order_user_id": str(order["user_id"]) if order.get("user_id") is not None else None,
                "order_user_agent": order.get("user_agent_type"),
                "order_card_type": order.get("card_type"),
                "order_ref": order.get("ref_id"),
                "order_ref_type": order.get("ref_type"),
            }
        )
    return rows


def transform_orders(orders: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for order in orders or []:
        rows.extend(transform_order(order))
    return rows


# --------------------------------------------------------------------- #
# Fans
# --------------------------------------------------------------------- #
def fan_user_id(fan: Mapping[str, Any]) -> Optional[str]:
    raw = fan.get("id") or fan.get("user_id") or fan.get("fan_id")
    return str(raw) if raw is not None else None


def transform_fan(fan: Mapping[str, Any], *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Convert fan details into an enriched ``events_users`` row."""
    user_id = fan_user_id(fan)
    if user_id is None:
        return None
    return {
        "user_id": user_id,
        "user_age": fan.get("age"),
        "user_birth_date": fan.get("birth_date"),
        "user_opt_in": fan.get("opt_in"),
        "user_total_spend": fan.get("overall_spend"),
        "user_tickets_purchased": fan.get("tickets_purchased"),
        "user_last_purchase": to_utc_iso(fan.get("last_purchase")),
        "user_gender": fan.get("gender"),
        "last_enriched_at": to_utc_iso(now or utcnow()),
    }
