"""
Integration adapters package.

Isolates the heterogeneous upstream order/harvest shapes so the learning
engine only ever consumes canonical events:

    from integrations.normalization import normalize_order, validate_order

    order = validate_order(normalize_order(payload, order_id="1001", source="shopify_orders"))
    for item in order.qualifying_items:
        ...
"""

from integrations.normalization import (
    ORDER_SOURCES,
    PRIMARY_SOURCE,
    SECONDARY_SOURCE,
    CanonicalHarvest,
    CanonicalLineItem,
    CanonicalOrder,
    build_stats_key,
    normalize_harvest,
    normalize_order,
    validate_order,
)

__all__ = [
    "ORDER_SOURCES",
    "PRIMARY_SOURCE",
    "SECONDARY_SOURCE",
    "CanonicalHarvest",
    "CanonicalLineItem",
    "CanonicalOrder",
    "build_stats_key",
    "normalize_harvest",
    "normalize_order",
    "validate_order",
]
