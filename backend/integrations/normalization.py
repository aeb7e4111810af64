"""
Order/Harvest Normalization Adapter

Upstream order records arrive in several legacy shapes:

    shopify_orders  (Shopify GraphQL sync, primary source)
        {"customerEmail": "chef@bistro.com", "shopifyCustomerId": "gid://shopify/Customer/42",
         "createdAt": "2026-02-20T15:04:05Z", "total": "48.00", "status": "delivered",
         "items": [{"title": "Pea Shoots", "quantity": 2, "price": 12.0,
                    "shopifyProductId": "gid://shopify/Product/123"}]}

    orders  (Shopify webhook, secondary source)
        {"customerId": "cust-9", "customerName": "Ana Ruiz",
         "createdAt": {"_seconds": 1771599845}, "total": 24,
         "lineItems": [{"name": "Sunflower", "quantity": "3"}]}

and harvest records as:

        {"cropId": "pea-shoots", "totalYieldOz": 96, "trayCount": 12,
         "harvestedAt": "2026-02-21T09:00:00Z"}

Everything downstream of this module consumes only the canonical types
defined here. The functions are pure: no I/O, no clock reads other than the
explicit ``default_date`` fallback passed in by the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.errors import ValidationSkip

PRIMARY_SOURCE = "shopify_orders"
SECONDARY_SOURCE = "orders"
ORDER_SOURCES = (PRIMARY_SOURCE, SECONDARY_SOURCE)

UNKNOWN = "unknown"
STATS_KEY_PART_MAX = 100
FIELD_MAX = 255

_CROP_KEY_RE = re.compile(r"[^a-z0-9]+")
_STATS_KEY_UNSAFE_RE = re.compile(r"[/\\.\s@]+")
_WHITESPACE_RE = re.compile(r"\s+")


# ── Canonical types ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class CanonicalLineItem:
    crop_key: str
    crop_display_name: str
    quantity: float
    line_total: float
    sequence: int

    @property
    def qualifies(self) -> bool:
        return self.quantity > 0 and self.crop_key != UNKNOWN


@dataclass(frozen=True)
class CanonicalOrder:
    order_id: str
    source: str
    external_id: str
    customer_key: str
    customer_name: str
    order_date: datetime | None
    total: float
    status: str | None
    items: list[CanonicalLineItem] = field(default_factory=list)

    @property
    def date_key(self) -> str:
        return self.order_date.strftime("%Y-%m-%d")

    @property
    def month_key(self) -> str:
        return self.order_date.strftime("%Y-%m")

    @property
    def qualifying_items(self) -> list[CanonicalLineItem]:
        return [item for item in self.items if item.qualifies]


@dataclass(frozen=True)
class CanonicalHarvest:
    harvest_id: str
    crop_id: str
    total_yield_oz: float
    tray_count: float
    harvested_at: datetime | None

    @property
    def yield_per_tray(self) -> float:
        return self.total_yield_oz / self.tray_count


# ── Field helpers ─────────────────────────────────────────────────────────


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return 0.0


def _last_segment(value: Any) -> str:
    return str(value).split("/")[-1]


def _cap(value: str) -> str:
    return value[:FIELD_MAX]


def get_line_items(order: dict[str, Any]) -> list[dict[str, Any]]:
    for field_name in ("items", "lineItems", "line_items"):
        items = order.get(field_name)
        if isinstance(items, list) and items:
            return items
    return []


def get_crop_key(item: dict[str, Any]) -> str:
    """Title (or name) slug, else the numeric tail of the product GID."""
    title = item.get("title") or item.get("name")
    if title:
        return _cap(_CROP_KEY_RE.sub("_", str(title).lower()).strip("_")) or UNKNOWN
    product_id = item.get("shopifyProductId")
    if product_id:
        return _cap(_last_segment(product_id))
    return UNKNOWN


def get_crop_display_name(item: dict[str, Any]) -> str:
    return _cap(str(item.get("title") or item.get("name") or "Unknown"))


def get_customer_key(order: dict[str, Any]) -> str:
    """Email is the most stable identifier across both order sources."""
    email = order.get("customerEmail")
    if email:
        return _cap(str(email).lower().strip())
    shopify_id = order.get("shopifyCustomerId")
    if shopify_id:
        return _cap(f"cust_{_last_segment(shopify_id)}")
    if order.get("customerId"):
        return _cap(str(order["customerId"]))
    name = order.get("customerName")
    if name:
        return _cap("name_" + _WHITESPACE_RE.sub("_", str(name).lower()))
    return UNKNOWN


def get_quantity(item: dict[str, Any]) -> float:
    return _to_float(item.get("quantity"))


def get_line_total(item: dict[str, Any]) -> float:
    line_total = _to_float(item.get("lineTotal"))
    if line_total:
        return line_total
    return _to_float(item.get("price")) * get_quantity(item)


def get_order_total(order: dict[str, Any]) -> float:
    return _to_float(order.get("total"))


def _from_epoch_seconds(seconds: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse any upstream timestamp shape into a naive UTC datetime.

    Accepts datetimes, ISO-8601 strings, epoch milliseconds and
    Firestore-style ``{"_seconds": ...}`` / ``{"seconds": ...}`` mappings.
    Out-of-range epochs parse as None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, dict):
        seconds = value.get("_seconds", value.get("seconds"))
        if seconds is None:
            return None
        parsed = _from_epoch_seconds(_to_float(seconds))
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_epoch_seconds(float(value) / 1000)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_order_date(order: dict[str, Any]) -> datetime | None:
    return parse_timestamp(order.get("createdAt"))


def get_external_order_id(order: dict[str, Any], order_id: str, source: str) -> str:
    """Dedup key. Primary rows always have one; secondary rows only when synced from Shopify."""
    external = order.get("shopifyOrderId")
    if source == PRIMARY_SOURCE:
        external = external or order.get("shopifyDraftOrderId") or order_id
    return str(external) if external else ""


def build_stats_key(customer_key: str, crop_key: str) -> str:
    """
    Storage key for a customer-crop pair.

    Must stay identical across the real-time, nightly and backfill paths.
    """

    def _safe(part: str) -> str:
        return _STATS_KEY_UNSAFE_RE.sub("_", str(part))[:STATS_KEY_PART_MAX]

    return f"{_safe(customer_key)}__{_safe(crop_key)}"


# ── Normalizers ───────────────────────────────────────────────────────────


def normalize_order(
    payload: dict[str, Any],
    *,
    order_id: str,
    source: str = PRIMARY_SOURCE,
    default_date: datetime | None = None,
) -> CanonicalOrder:
    """Map one upstream order record into a CanonicalOrder (no validation)."""
    raw_items = get_line_items(payload)
    customer_key = get_customer_key(payload)
    items = [
        CanonicalLineItem(
            crop_key=get_crop_key(item),
            crop_display_name=get_crop_display_name(item),
            quantity=get_quantity(item),
            line_total=get_line_total(item),
            sequence=index,
        )
        for index, item in enumerate(raw_items)
        if isinstance(item, dict)
    ]
    return CanonicalOrder(
        order_id=str(order_id),
        source=source,
        external_id=get_external_order_id(payload, str(order_id), source),
        customer_key=customer_key,
        customer_name=_cap(str(payload.get("customerName") or customer_key)),
        order_date=get_order_date(payload) or default_date,
        total=get_order_total(payload),
        status=payload.get("status"),
        items=items,
    )


def validate_order(order: CanonicalOrder) -> CanonicalOrder:
    """Raise ValidationSkip for orders the learning engine must ignore."""
    if order.order_date is None:
        raise ValidationSkip("missing_date")
    if order.customer_key == UNKNOWN:
        raise ValidationSkip("unknown_customer")
    if not order.items:
        raise ValidationSkip("no_line_items")
    if order.status == "cancelled":
        raise ValidationSkip("cancelled")
    return order


def normalize_harvest(
    payload: dict[str, Any],
    *,
    harvest_id: str,
    default_date: datetime | None = None,
) -> CanonicalHarvest:
    """Map and validate one upstream harvest record."""
    crop_id = payload.get("cropId")
    if not crop_id:
        raise ValidationSkip("missing_cropId")
    total_yield_oz = _to_float(payload.get("totalYieldOz"))
    tray_count = _to_float(payload.get("trayCount"))
    if not total_yield_oz or tray_count <= 0:
        raise ValidationSkip("missing_yield_data")
    return CanonicalHarvest(
        harvest_id=str(harvest_id),
        crop_id=_cap(str(crop_id)),
        total_yield_oz=total_yield_oz,
        tray_count=tray_count,
        harvested_at=parse_timestamp(payload.get("harvestedAt")) or default_date,
    )
