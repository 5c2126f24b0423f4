from __future__ import annotations

from decimal import Decimal

import pytest

from integrations.tixr.classifier import (
    ReportingCategory as RC,
    classify,
    classify_row,
    classify_sale_item,
    to_decimal,
    to_quantity,
    unit_amount,
)


@pytest.mark.parametrize(
    "name, category, ref, gross, expected",
    [
        ("Vestiaire", "OUTLET", None, 5, RC.COATCHECK),
        ("Coat check", "outlet", "WEB", "3.00", RC.COATCHECK),
        ("Billet transféré", "GA", None, 0, RC.TRANSFERRED),
        ("Reporté au 12 mai", "VIP", None, 80, RC.TRANSFERRED),
        ("Promoteur Alex", "GA", None, 0, RC.PROMOTER),
        ("Table billet physique prepaid", "TABLE", "BACKSTAGE", 0, RC.PHYSICAL_TABLE_PREPAID),
        ("Door table - pay at the door", "SERVICE", "BACKSTAGE", 0, RC.PHYSICAL_TABLE_DOOR),
        ("Guestlist Marc", "GUEST", "BACKSTAGE", 0, RC.PHYSICAL_GUESTLIST),
        ("Billet physique", "GA", "BACKSTAGE", 0, RC.DOOR_GA),
        ("Hard copy", "VIP", "BACKSTAGE", 0, RC.DOOR_VIP),
        ("Invitation", "VIP", None, 0, RC.COMP_VIP),
        ("Concours radio", "GA", "WEB", 0, RC.COMP_GA),
        ("Staff", "GA", "BACKSTAGE", 0, RC.COMP_GA),
        ("Staff", "VIP", "BACKSTAGE", "0.00", RC.COMP_VIP),
        ("COMP - GA", "GA", "BACKSTAGE", 0, RC.COMP_GA),
        ("RSVP", "RSVP", None, 0, RC.FREE_GA),
        ("Guest entry", "GUEST", "WEB", 0, RC.FREE_GA),
        ("Free VIP", "VIP", None, 0, RC.FREE_VIP),
        ("Banquette 6 pers.", "GA", None, 500, RC.TABLES_RSVP),
        ("Booth", "BOOTH", None, 300, RC.TABLES_RSVP),
        ("Seated front row", "SEATED", None, 45, RC.TABLES_RSVP),
        ("Photo pass", "PHOTO", None, 20, RC.VIP_PAID),
        ("VIP early", "VIP", None, "75.50", RC.VIP_PAID),
        ("GA early bird", "GA", None, "25", RC.GA_PAID),
        ("Refund adjustment", "GA", None, -10, RC.UNCATEGORIZED),
    ],
)
def test_classify_scenarios(name, category, ref, gross, expected):
    assert classify(name, category, ref, gross) is expected


def test_earlier_rules_win():
    # Coat check beats transfer, transfer beats promoter, promoter beats comp.
    assert classify("Vestiaire transfert", "OUTLET", None, 0) is RC.COATCHECK
    assert classify("Transfert promoter", "GA", None, 0) is RC.TRANSFERRED
    assert classify("Promoter comp", "VIP", "BACKSTAGE", 0) is RC.PROMOTER
    # Coat check beats comp for outlet items.
    assert classify("Vestiaire comp", "OUTLET", "BACKSTAGE", 0) is RC.COATCHECK
    # Physical/door beats comp for backstage free tickets.
    assert classify("Comp billet physique", "GA", "BACKSTAGE", 0) is RC.DOOR_GA


def test_physical_rules_need_backstage_and_zero_gross():
    assert classify("Billet physique", "GA", "WEB", 0) is RC.FREE_GA
    assert classify("Billet physique", "GA", "BACKSTAGE", 20) is RC.GA_PAID


def test_only_the_sign_of_gross_matters():
    assert classify("GA", "GA", None, "0.01") is classify("GA", "GA", None, 1000)
    assert classify("GA", "GA", None, "0.00") is classify("GA", "GA", None, 0)


@pytest.mark.parametrize(
    "args",
    [
        (None, None, None, None),
        ("", "", "", ""),
        ("x", "y", "z", "not-a-number"),
        (123, 456, 789, float("nan")),
        ("x", None, None, {"weird": True}),
    ],
)
def test_classify_is_total(args):
    assert isinstance(classify(*args), RC)


def test_malformed_gross_counts_as_zero():
    assert to_decimal("abc") == Decimal("0")
    assert to_decimal(None) == Decimal("0")
    assert to_decimal(float("inf")) == Decimal("0")
    assert to_decimal(" 12.50 ") == Decimal("12.50")
    assert classify("GA", "GA", None, "abc") is RC.FREE_GA


def test_malformed_quantity_falls_back():
    assert to_quantity("2.0") == 2
    assert to_quantity(" 3 ") == 3
    assert to_quantity("lots") == 0
    assert to_quantity(None) == 0
    assert to_quantity(float("inf")) == 0


def test_classify_row_reads_stored_order_columns():
    row = {
        "order_sales_item_name": "Invité",
        "order_category": "VIP",
        "order_ref_type": "WEB",
        "order_gross": "0.00",
    }
    assert classify_row(row) is RC.COMP_VIP


def test_classify_sale_item_uses_unit_price():
    item = {"name": "GA", "category": "GA", "total": "50", "quantity": 2}
    assert classify_sale_item(item, None) is RC.GA_PAID
    assert unit_amount("50", 2) == Decimal("25")
    assert unit_amount("50", 0) == Decimal("50")


def test_taxonomy_has_sixteen_categories():
    assert len(RC) == 16
