"""CUIT validation."""
import re
from typing import List

from afip_monitor.errors import ValidationError

CUIT_PATTERN = re.compile(r"^\d{11}$")
CUIT_WEIGHTS = [5, 4, 3, 2, 7, 6, 5, 4, 3, 2]


def normalize_cuit(cuit) -> str:
    """Strip dashes and spaces: '20-12345678-6' -> '20123456786'."""
    if cuit is None:
        return ""
    return str(cuit).replace("-", "").replace(" ", "").strip()


def cuit_check_digit_valid(cuit: str) -> bool:
    digits = [int(c) for c in cuit]
    total = sum(d * w for d, w in zip(digits[:10], CUIT_WEIGHTS))
    remainder = total % 11
    expected = remainder if remainder < 2 else 11 - remainder
    return expected == digits[10]


def cuit_errors(cuit) -> List[str]:
    """Return the list of problems with a CUIT (empty when valid)."""
    value = normalize_cuit(cuit)
    if not value:
        return ["CUIT is required"]
    if not CUIT_PATTERN.match(value):
        return ["CUIT must have exactly 11 digits"]
    if not cuit_check_digit_valid(value):
        return ["CUIT check digit is invalid"]
    return []


def validate_cuit(cuit) -> str:
    """Validate and return the normalized CUIT, raising ValidationError."""
    errors = cuit_errors(cuit)
    if errors:
        raise ValidationError(
            errors[0],
            code="INVALID_CUIT",
            details={"cuit": str(cuit) if cuit is not None else None, "errors": errors},
        )
    return normalize_cuit(cuit)
