"""
Input Validation - sanitization for amounts and identifiers at the edges.

Every external input (HTTP body, channel frame, CLI flag) passes through
these helpers before it reaches the engine, so the core only ever sees
finite Decimals and bounded identifier strings.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Tuple

# =============================================================================
# Constants
# =============================================================================

MAX_IDENTIFIER_LENGTH = 128
MAX_INVITEES = 256

# Amounts are money: two decimal places is enough, anything finer is rejected
# rather than silently rounded.
MAX_AMOUNT = Decimal("1000000000")
AMOUNT_PLACES = 2


# =============================================================================
# Validation Functions
# =============================================================================


def parse_amount(value: Any, name: str, allow_zero: bool = False) -> Decimal:
    """
    Parse a monetary amount.

    Args:
        value: int, str, float or Decimal
        name: Field name for error messages
        allow_zero: Whether 0 is acceptable

    Returns:
        The amount as a Decimal

    Raises:
        ValueError: if the value is not a finite, non-negative amount
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{name} must be a number")

    try:
        # str() first so floats like 0.1 keep their printed value
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")

    if not amount.is_finite():
        raise ValueError(f"{name} must be finite")
    if amount < 0:
        raise ValueError(f"{name} must not be negative")
    if amount == 0 and not allow_zero:
        raise ValueError(f"{name} must be greater than 0")
    if amount > MAX_AMOUNT:
        raise ValueError(f"{name} exceeds maximum {MAX_AMOUNT}")
    if -amount.as_tuple().exponent > AMOUNT_PLACES:
        raise ValueError(f"{name} has more than {AMOUNT_PLACES} decimal places")

    return amount


def validate_identifier(value: Any, name: str) -> Tuple[bool, str]:
    """
    Validate an opaque identifier (user, auction, deal room).

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be a string, got {type(value).__name__}"
    if not value.strip():
        return False, f"{name} must not be empty"
    if len(value) > MAX_IDENTIFIER_LENGTH:
        return False, f"{name} exceeds max length {MAX_IDENTIFIER_LENGTH}"
    return True, ""


def unique_identifiers(values: Iterable[str]) -> List[str]:
    """De-duplicate identifiers preserving first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def validate_duration_minutes(value: Any) -> Tuple[bool, str]:
    """Durations are any positive whole number of minutes."""
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"duration_minutes must be an integer, got {type(value).__name__}"
    if value <= 0:
        return False, "duration_minutes must be positive"
    return True, ""
