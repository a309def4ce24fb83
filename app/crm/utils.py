from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

MONEY_QUANT = Decimal("0.01")
# Numeric(12, 2): ten integer digits.
MONEY_LIMIT = Decimal("10000000000")


def clean_str(value: object) -> str | None:
    """Strip form input; blank becomes None."""
    if value is None:
        return None
    return str(value).strip() or None


def parse_int(value: object) -> int | None:
    s = clean_str(value)
    if s is None:
        return None
    return int(s)


class MoneyOutOfRange(ValueError):
    pass


def parse_money(value: object) -> Decimal | None:
    """
    Parse a signed amount with two decimal places. Raises ValueError on junk and
    MoneyOutOfRange when the magnitude does not fit the money columns.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        d = value
    else:
        s = clean_str(value)
        if s is None:
            return None
        try:
            d = Decimal(s.replace(",", ""))
        except InvalidOperation:
            raise ValueError(f"not a number: {s!r}")
    if not d.is_finite():
        raise ValueError("amount must be finite")
    if abs(d) >= MONEY_LIMIT:
        raise MoneyOutOfRange(f"amount out of range: {d}")
    try:
        d = d.quantize(MONEY_QUANT)
    except InvalidOperation:
        raise ValueError(f"not a number: {d}")
    # 9999999999.999 rounds up to the limit.
    if abs(d) >= MONEY_LIMIT:
        raise MoneyOutOfRange(f"amount out of range: {d}")
    return d


def parse_datetime(value: object) -> datetime | None:
    """
    Accepts datetime objects, ISO strings ("2025-01-02T10:30", "2025-01-02 10:30:00")
    and HTML datetime-local values. Timezone-aware values are stored as naive UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = clean_str(value)
        if s is None:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
