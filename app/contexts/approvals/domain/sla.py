from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta


_SLA_PATTERN = re.compile(
    r"^\s*(?P<amount>\d+(?:\.\d+)?)\s*(?P<business>business\s+)?(?P<unit>h|hrs?|hours?|d|days?|w|weeks?)\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SlaDuration:
    amount: float
    unit: str
    business_days: bool = False

    def due_at(self, started_at: datetime) -> datetime:
        if self.unit == "hours":
            return started_at + timedelta(hours=self.amount)
        days = self.amount * 7 if self.unit == "weeks" else self.amount
        if not self.business_days:
            return started_at + timedelta(days=days)
        return _add_business_days(started_at, int(round(days)))


def _add_business_days(start: datetime, days: int) -> datetime:
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


def parse_sla(value: str | None) -> SlaDuration | None:
    match = _SLA_PATTERN.match(str(value or ""))
    if not match:
        return None
    unit_raw = match.group("unit").lower()
    if unit_raw.startswith("h"):
        unit = "hours"
    elif unit_raw.startswith("w"):
        unit = "weeks"
    else:
        unit = "days"
    return SlaDuration(
        amount=float(match.group("amount")),
        unit=unit,
        business_days=bool(match.group("business")),
    )


def is_overdue(sla_value: str | None, started_at: datetime, now: datetime) -> bool:
    sla = parse_sla(sla_value)
    if sla is None:
        return False
    return now >= sla.due_at(started_at)
