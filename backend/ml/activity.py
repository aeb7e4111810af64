"""Customer activity flag: active → at_risk → churned, driven by days since the last order."""

from __future__ import annotations

ACTIVE_WITHIN_DAYS = 30
CHURNED_AFTER_DAYS = 84
AT_RISK_INTERVAL_MULTIPLIER = 2


def classify_activity(days_since_last: float | None, avg_days_between_orders: float | None) -> str:
    """
    Evaluated in order:
      1. <= 30 days                          → active
      2. > 2x the pair's usual interval       → at_risk
      3. > 84 days                            → churned
      4. otherwise (31-84 days)               → at_risk

    A pair with a known cadence never reaches "churned": rule 2 fires first.
    """
    if days_since_last is None or days_since_last <= ACTIVE_WITHIN_DAYS:
        return "active"
    if avg_days_between_orders and days_since_last > AT_RISK_INTERVAL_MULTIPLIER * avg_days_between_orders:
        return "at_risk"
    if days_since_last > CHURNED_AFTER_DAYS:
        return "churned"
    return "at_risk"
