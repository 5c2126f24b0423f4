"""
Reporting-category classification for ticket line items.

The procedure is an ordered list of rules; the first rule that matches wins.
Keyword lists live in :data:`KEYWORDS` so they can be extended without
touching the control flow below.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class ReportingCategory(str, Enum):
    GA_PAID = "GA_PAID"
    VIP_PAID = "VIP_PAID"
    COMP_GA = "COMP_GA"
    COMP_VIP = "COMP_VIP"
    FREE_GA = "FREE_GA"
    FREE_VIP = "FREE_VIP"
    DOOR_GA = "DOOR_GA"
    DOOR_VIP = "DOOR_VIP"
    PHYSICAL_GUESTLIST = "PHYSICAL_GUESTLIST"
    PHYSICAL_TABLE_PREPAID = "PHYSICAL_TABLE_PREPAID"
    PHYSICAL_TABLE_DOOR = "PHYSICAL_TABLE_DOOR"
    TABLES_RSVP = "TABLES_RSVP"
    COATCHECK = "COATCHECK"
    TRANSFERRED = "TRANSFERRED"
    PROMOTER = "PROMOTER"
    UNCATEGORIZED = "UNCATEGORIZED"

    def __str__(self) -> str:
        return self.value


BACKSTAGE = "BACKSTAGE"

# Token groups matched as upper-case substrings of the item name or category.
KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "coatcheck_category": ("OUTLET",),
    "coatcheck": ("VESTIAIRE", "VESTIAIRES", "COAT CHECK", "COATCHECK"),
    "transfer": ("TRANSFERT", "TRANSFÉRÉ", "TRANSFERE", "TRANSFERRED", "REPORTÉ"),
    "promoter": ("PROMOTER", "PROMOTEUR"),
    "table_category": ("TABLE", "SERVICE"),
    "physical_table_prepaid": ("BILLET PHYSIQUE", "DOOR TABLE"),
    "physical_table_door": ("BILLET PHYSIQUE", "DOOR"),
    "prepaid": ("PREPAID",),
    "pay_at_door": ("PAY AT THE DOOR", "BUY AT DOOR"),
    "guest_category": ("GUEST",),
    "guestlist": ("GUESTLIST", "GL"),
    "physical": ("BILLET PHYSIQUE", "HARD COPY", "DOOR"),
    "comp": ("COMP", "INVITÉ", "INVITE", "FAVEUR", "INVITATION", "CONCOURS", "GIVEAWAY"),
    "paid_table_category": ("TABLE", "BOOTH", "SEATED"),
    "paid_table_name": ("BANQUETTE",),
    "vip_paid_category": ("VIP", "PHOTO"),
}


def _has(text: str, group: str) -> bool:
    return any(token in text for token in KEYWORDS[group])


def _upper(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().upper()


def to_decimal(value: Any) -> Decimal:
    """Parse an amount; anything unparsable counts as zero."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def to_quantity(value: Any) -> int:
    """Parse a ticket count; ``"2.0"`` reads as 2 and junk as zero."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return int(to_decimal(value))


def _physical(name: str, category: str) -> Optional[ReportingCategory]:
    """Backstage-issued $0 tickets: tables, guestlist and hard copies."""
    if _has(category, "table_category"):
        if (
            _has(name, "physical_table_prepaid")
            and _has(name, "prepaid")
            and not _has(name, "pay_at_door")
        ):
            return ReportingCategory.PHYSICAL_TABLE_PREPAID
        if (
            _has(name, "physical_table_door")
            and _has(name, "pay_at_door")
            and not _has(name, "prepaid")
        ):
            return ReportingCategory.PHYSICAL_TABLE_DOOR
    if _has(category, "guest_category") and _has(name, "guestlist"):
        return ReportingCategory.PHYSICAL_GUESTLIST
    if category == "GA" and _has(name, "physical"):
        return ReportingCategory.DOOR_GA
    if category == "VIP" and _has(name, "physical"):
        return ReportingCategory.DOOR_VIP
    return None


def classify(
    name: Any,
    category: Any,
    referral_type: Any,
    gross: Any,
) -> ReportingCategory:
    """Map one line item to exactly one :class:`ReportingCategory`.

    Only the sign of ``gross`` matters. ``None`` or malformed inputs are treated
    as empty strings / zero; this function never raises on bad data.
    """
    name_u = _upper(name)
    category_u = _upper(category)
    ref_u = _upper(referral_type)
    amount = to_decimal(gross)

    is_free = amount == 0
    is_paid = amount > 0
    is_backstage = ref_u == BACKSTAGE

    if category_u in KEYWORDS["coatcheck_category"] and _has(name_u, "coatcheck"):
        return ReportingCategory.COATCHECK
    if _has(name_u, "transfer"):
        return ReportingCategory.TRANSFERRED
    if _has(name_u, "promoter"):
        return ReportingCategory.PROMOTER

    if is_backstage and is_free:
        physical = _physical(name_u, category_u)
        if physical is not None:
            return physical

    if is_free and (_has(name_u, "comp") or is_backstage):
        return ReportingCategory.COMP_VIP if category_u == "VIP" else ReportingCategory.COMP_GA

    if is_free:
        return ReportingCategory.FREE_VIP if category_u == "VIP" else ReportingCategory.FREE_GA

    if _has(category_u, "paid_table_category") or _has(name_u, "paid_table_name"):
        return ReportingCategory.TABLES_RSVP

    if is_paid:
        if category_u in KEYWORDS["vip_paid_category"]:
            return ReportingCategory.VIP_PAID
        return ReportingCategory.GA_PAID

    return ReportingCategory.UNCATEGORIZED


def classify_row(row: Mapping[str, Any]) -> ReportingCategory:
    """Classify a stored ``events_orders`` row."""
    return classify(
        row.get("order_sales_item_name"),
        row.get("order_category"),
        row.get("order_ref_type"),
        row.get("order_gross"),
    )


def classify_sale_item(item: Mapping[str, Any], ref_type: Any) -> ReportingCategory:
    """Classify a sale item from the orders API using its unit price."""
    return classify(
        item.get("name"),
        item.get("category"),
        ref_type,
        unit_amount(item.get("total"), item.get("quantity")),
    )


def unit_amount(total: Any, quantity: Any) -> Decimal:
    """Return ``total / quantity``; a missing or non-positive quantity means one."""
    amount = to_decimal(total)
    qty = to_decimal(quantity)
    if qty <= 0:
        return amount
    return amount / qty
