"""Per-event sales totals computed from stored order rows."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Mapping

from integrations.tixr.classifier import ReportingCategory, classify_row, to_decimal, to_quantity

COMPLETE_STATUS = "COMPLETE"

_CENTS = Decimal("0.01")

BUCKETS: Dict[ReportingCategory, str] = {
    ReportingCategory.GA_PAID: "sales_total_ga",
    ReportingCategory.VIP_PAID: "sales_total_vip",
    ReportingCategory.COMP_GA: "sales_total_comp_ga",
    ReportingCategory.COMP_VIP: "sales_total_comp_vip",
    ReportingCategory.FREE_GA: "sales_total_free_ga",
    ReportingCategory.FREE_VIP: "sales_total_free_vip",
    ReportingCategory.DOOR_GA: "sales_total_door",
    ReportingCategory.DOOR_VIP: "sales_total_door",
    ReportingCategory.PHYSICAL_GUESTLIST: "sales_total_door",
    ReportingCategory.PHYSICAL_TABLE_PREPAID: "sales_total_door",
    ReportingCategory.PHYSICAL_TABLE_DOOR: "sales_total_door",
    ReportingCategory.TABLES_RSVP: "sales_total_tables",
    ReportingCategory.COATCHECK: "sales_total_coatcheck",
    ReportingCategory.TRANSFERRED: "sales_total_other",
    ReportingCategory.PROMOTER: "sales_total_other",
    ReportingCategory.UNCATEGORIZED: "sales_total_other",
}

BUCKET_COLUMNS = tuple(dict.fromkeys(BUCKETS.values()))


def aggregate_event_sales(event_id: Any, orders: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return the ``events_sales`` row for one event.

    Only ``COMPLETE`` rows count. Quantities go to the bucket of the row's
    reporting category; gross and net are summed over every complete row.
    """
    totals: Dict[str, Any] = {column: 0 for column in BUCKET_COLUMNS}
    gross = Decimal("0")
    net = Decimal("0")

    for row in orders:
        if str(row.get("order_status") or "").upper() != COMPLETE_STATUS:
            continue
        totals[BUCKETS[classify_row(row)]] += to_quantity(row.get("order_quantity"))
        gross += to_decimal(row.get("order_gross"))
        net += to_decimal(row.get("order_net"))

    return {
        "event_id": event_id,
        **totals,
        "sales_gross": gross.quantize(_CENTS, rounding=ROUND_HALF_UP),
        "sales_net": net.quantize(_CENTS, rounding=ROUND_HALF_UP),
    }
