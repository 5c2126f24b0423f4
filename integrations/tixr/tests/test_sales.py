from __future__ import annotations

import random
from decimal import Decimal

from integrations.tixr.sales import BUCKET_COLUMNS, aggregate_event_sales


def _order(name, category, gross, quantity, *, status="COMPLETE", ref="WEB", net=None):
    return {
        "order_status": status,
        "order_sales_item_name": name,
        "order_category": category,
        "order_ref_type": ref,
        "order_gross": gross,
        "order_net": net if net is not None else gross,
        "order_quantity": quantity,
    }


ORDERS = [
    _order("GA early bird", "GA", "50.00", 2, net="45.00"),
    _order("VIP", "VIP", "120.00", 1, net="110.00"),
    _order("Invitation", "GA", "0", 3),
    _order("Billet physique", "VIP", "0", 1, ref="BACKSTAGE"),
    _order("Banquette", "GA", "400", 1),
    _order("Vestiaire", "OUTLET", "5", 4),
    _order("Promoter", "GA", "0", 2),
    _order("GA early bird", "GA", "30.00", 1, status="REFUNDED"),
]


def test_quantities_go_to_their_buckets():
    row = aggregate_event_sales(42, ORDERS)

    assert row["event_id"] == 42
    assert row["sales_total_ga"] == 2
    assert row["sales_total_vip"] == 1
    assert row["sales_total_comp_ga"] == 3
    assert row["sales_total_door"] == 1
    assert row["sales_total_tables"] == 1
    assert row["sales_total_coatcheck"] == 4
    assert row["sales_total_other"] == 2
    assert row["sales_total_free_ga"] == 0


def test_only_complete_rows_count_toward_money():
    row = aggregate_event_sales(42, ORDERS)

    assert row["sales_gross"] == Decimal("575.00")
    assert row["sales_net"] == Decimal("560.00")


def test_no_orders_gives_zero_row():
    row = aggregate_event_sales(7, [])

    assert all(row[column] == 0 for column in BUCKET_COLUMNS)
    assert row["sales_gross"] == Decimal("0.00")


def test_aggregation_is_order_independent_and_idempotent():
    shuffled = list(ORDERS)
    random.Random(3).shuffle(shuffled)

    first = aggregate_event_sales(42, ORDERS)
    assert aggregate_event_sales(42, shuffled) == first
    assert aggregate_event_sales(42, ORDERS) == first
