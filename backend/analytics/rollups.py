"""
Aggregation Rollups — daily buckets and monthly summaries.

Three producers, one record shape:
  - real-time: one BucketIncrement per order, applied with atomic increments
  - backfill: BucketIncrements accumulated in memory (DailyBucketTotals,
    MonthlyTotals) during the chronological replay
  - nightly: monthly summaries rebuilt from a full scan of the daily buckets

finalize_month() is the single place a MonthlySummary payload is shaped.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from integrations.normalization import CanonicalOrder

TOP_CUSTOMERS_PER_MONTH = 10


@dataclass(frozen=True)
class BucketIncrement:
    """Everything one order adds to its day's counters."""

    bucket_date: str
    customer_key: str
    revenue: float
    crops: dict[str, tuple[float, float]] = field(default_factory=dict)  # crop -> (qty, revenue)

    @property
    def month(self) -> str:
        return self.bucket_date[:7]


def order_bucket_increment(order: CanonicalOrder) -> BucketIncrement:
    crops: dict[str, tuple[float, float]] = {}
    for item in order.qualifying_items:
        qty, revenue = crops.get(item.crop_key, (0.0, 0.0))
        crops[item.crop_key] = (qty + item.quantity, revenue + item.line_total)
    return BucketIncrement(
        bucket_date=order.date_key,
        customer_key=order.customer_key,
        revenue=order.total,
        crops=crops,
    )


def finalize_month(
    month: str,
    *,
    total_orders: int,
    total_revenue: float,
    crop_totals: dict[str, tuple[float, float]],
    customer_totals: dict[str, tuple[int, float]],
) -> dict[str, Any]:
    ranked = sorted(customer_totals.items(), key=lambda kv: (-round(kv[1][1], 2), kv[0]))
    return {
        "month": month,
        "total_orders": int(total_orders),
        "total_revenue": round(float(total_revenue), 2),
        "unique_customers": len(customer_totals),
        "crop_breakdown": {
            crop: {"qty": round(float(qty), 4), "revenue": round(float(revenue), 2)}
            for crop, (qty, revenue) in sorted(crop_totals.items())
        },
        "top_customers": [
            {"customer_key": key, "orders": int(orders), "revenue": round(float(revenue), 2)}
            for key, (orders, revenue) in ranked[:TOP_CUSTOMERS_PER_MONTH]
        ],
        "avg_order_value": round(float(total_revenue) / total_orders, 2) if total_orders > 0 else 0.0,
    }


# ── Backfill: direct accumulation ─────────────────────────────────────────


class DailyBucketTotals:
    """In-memory daily buckets, exportable as rows for the three bucket tables."""

    def __init__(self):
        self.days: dict[str, list] = {}  # date -> [order_count, revenue]
        self.crops: dict[tuple[str, str], list] = {}
        self.customers: dict[tuple[str, str], list] = {}

    def add(self, inc: BucketIncrement) -> None:
        day = self.days.setdefault(inc.bucket_date, [0, 0.0])
        day[0] += 1
        day[1] += inc.revenue

        customer = self.customers.setdefault((inc.bucket_date, inc.customer_key), [0, 0.0])
        customer[0] += 1
        customer[1] += inc.revenue

        for crop_key, (qty, revenue) in inc.crops.items():
            crop = self.crops.setdefault((inc.bucket_date, crop_key), [0.0, 0.0])
            crop[0] += qty
            crop[1] += revenue

    def __len__(self) -> int:
        return len(self.days)

    def bucket_rows(self) -> list[dict[str, Any]]:
        return [
            {"bucket_date": d, "order_count": c, "total_revenue": r}
            for d, (c, r) in sorted(self.days.items())
        ]

    def crop_rows(self) -> list[dict[str, Any]]:
        return [
            {"bucket_date": d, "crop_key": k, "quantity": q, "revenue": r}
            for (d, k), (q, r) in sorted(self.crops.items())
        ]

    def customer_rows(self) -> list[dict[str, Any]]:
        return [
            {"bucket_date": d, "customer_key": k, "order_count": c, "revenue": r}
            for (d, k), (c, r) in sorted(self.customers.items())
        ]


class MonthlyTotals:
    def __init__(self):
        self._orders: dict[str, int] = defaultdict(int)
        self._revenue: dict[str, float] = defaultdict(float)
        self._crops: dict[str, dict[str, list]] = defaultdict(dict)
        self._customers: dict[str, dict[str, list]] = defaultdict(dict)

    def add(self, inc: BucketIncrement) -> None:
        month = inc.month
        self._orders[month] += 1
        self._revenue[month] += inc.revenue
        customer = self._customers[month].setdefault(inc.customer_key, [0, 0.0])
        customer[0] += 1
        customer[1] += inc.revenue
        for crop_key, (qty, revenue) in inc.crops.items():
            crop = self._crops[month].setdefault(crop_key, [0.0, 0.0])
            crop[0] += qty
            crop[1] += revenue

    def __len__(self) -> int:
        return len(self._orders)

    def summaries(self) -> dict[str, dict[str, Any]]:
        return {
            month: finalize_month(
                month,
                total_orders=self._orders[month],
                total_revenue=self._revenue[month],
                crop_totals={k: tuple(v) for k, v in self._crops[month].items()},
                customer_totals={k: tuple(v) for k, v in self._customers[month].items()},
            )
            for month in sorted(self._orders)
        }


# ── Nightly: rebuild from a scan of daily buckets ─────────────────────────


def monthly_summaries_from_buckets(
    buckets: list[dict[str, Any]],
    crop_rows: list[dict[str, Any]],
    customer_rows: list[dict[str, Any]],
) -> dict[str, dict[str, Any]]:
    """Group every stored daily bucket by YYYY-MM and shape one summary per month."""
    if not buckets:
        return {}

    days = pd.DataFrame(buckets, columns=["bucket_date", "order_count", "total_revenue"])
    days["month"] = days["bucket_date"].str[:7]
    month_totals = days.groupby("month")[["order_count", "total_revenue"]].sum()

    crops = pd.DataFrame(crop_rows, columns=["bucket_date", "crop_key", "quantity", "revenue"])
    crops["month"] = crops["bucket_date"].str[:7]
    crop_totals = crops.groupby(["month", "crop_key"])[["quantity", "revenue"]].sum()

    customers = pd.DataFrame(customer_rows, columns=["bucket_date", "customer_key", "order_count", "revenue"])
    customers["month"] = customers["bucket_date"].str[:7]
    customer_totals = customers.groupby(["month", "customer_key"])[["order_count", "revenue"]].sum()

    crops_by_month: dict[str, dict[str, tuple[float, float]]] = defaultdict(dict)
    for (month, crop_key), row in crop_totals.iterrows():
        crops_by_month[month][crop_key] = (float(row["quantity"]), float(row["revenue"]))

    customers_by_month: dict[str, dict[str, tuple[int, float]]] = defaultdict(dict)
    for (month, customer_key), row in customer_totals.iterrows():
        customers_by_month[month][customer_key] = (int(row["order_count"]), float(row["revenue"]))

    return {
        month: finalize_month(
            month,
            total_orders=int(row["order_count"]),
            total_revenue=float(row["total_revenue"]),
            crop_totals=crops_by_month.get(month, {}),
            customer_totals=customers_by_month.get(month, {}),
        )
        for month, row in month_totals.sort_index().iterrows()
    }
