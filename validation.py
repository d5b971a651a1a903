import uuid
from datetime import date
from typing import Optional, Union

from errors import (
    InvalidAmount,
    InvalidDateRange,
    InvalidID,
    InvalidName,
    InvalidPeriod,
    InvalidThreshold,
)
from models import BudgetPeriod

MAX_BUDGET_AMOUNT_CENTS = 99_999_999_999
MAX_BUDGET_NAME_LENGTH = 255
MIN_ALERT_THRESHOLD = 1
MAX_ALERT_THRESHOLD = 100

IdLike = Union[uuid.UUID, str]


def parse_id(value: Optional[IdLike], error: type[InvalidID] = InvalidID) -> uuid.UUID:
    """Coerce ``value`` to a UUID or raise ``error``.

    The nil UUID is rejected as well; it is never assigned to a stored row.
    """
    if isinstance(value, uuid.UUID):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = uuid.UUID(value.strip())
        except ValueError as exc:
            raise error(f"Malformed identifier: {value!r}") from exc
    else:
        raise error(f"Malformed identifier: {value!r}")
    if parsed.int == 0:
        raise error("Identifier cannot be the nil UUID")
    return parsed


def parse_optional_id(
    value: Optional[IdLike], error: type[InvalidID] = InvalidID
) -> Optional[uuid.UUID]:
    if value is None:
        return None
    return parse_id(value, error)


def validate_budget_name(name: Optional[str]) -> str:
    clean = (name or "").strip()
    if not clean:
        raise InvalidName("Budget name cannot be empty")
    if len(clean) > MAX_BUDGET_NAME_LENGTH:
        raise InvalidName(
            f"Budget name cannot exceed {MAX_BUDGET_NAME_LENGTH} characters"
        )
    return clean


def validate_budget_amount(amount_cents: int) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmount("Budget amount must be a whole number of cents")
    if amount_cents <= 0:
        raise InvalidAmount("Budget amount must be greater than 0")
    if amount_cents > MAX_BUDGET_AMOUNT_CENTS:
        raise InvalidAmount("Budget amount too large")
    return amount_cents


def validate_budget_period(period: Union[BudgetPeriod, str]) -> BudgetPeriod:
    try:
        return BudgetPeriod(period)
    except ValueError as exc:
        allowed = ", ".join(p.value for p in BudgetPeriod)
        raise InvalidPeriod(
            f"Invalid budget period {period!r}; expected one of {allowed}"
        ) from exc


def validate_date_range(start: date, end: date) -> None:
    if end <= start:
        raise InvalidDateRange("Budget end date must be after start date")


def validate_threshold(threshold: int) -> int:
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise InvalidThreshold("Threshold percentage must be an integer")
    if not MIN_ALERT_THRESHOLD <= threshold <= MAX_ALERT_THRESHOLD:
        raise InvalidThreshold(
            f"Threshold percentage must be between {MIN_ALERT_THRESHOLD} "
            f"and {MAX_ALERT_THRESHOLD}"
        )
    return threshold
