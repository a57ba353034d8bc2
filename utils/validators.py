"""Input validation for deposit creation"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from config import Config
from utils.exceptions import InvalidInput

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_CENTS = Decimal("0.01")


def validate_email(email: str) -> bool:
    """Validate email address format"""
    if not email or not isinstance(email, str):
        return False

    # Basic format check - must have exactly one @ symbol
    if email.count('@') != 1:
        return False

    local_part, domain_part = email.split('@')

    if not local_part or len(local_part) > 64:
        return False
    if '..' in local_part:
        return False

    if not domain_part or len(domain_part) > 253:
        return False
    if '.' not in domain_part or '..' in domain_part:
        return False

    return _EMAIL_PATTERN.match(email) is not None


def parse_amount(value) -> Decimal:
    """Positive amount quantized to cents; raises InvalidInput otherwise"""
    if isinstance(value, bool) or value is None:
        raise InvalidInput("Amount must be a positive number greater than 0", field="amount")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput("Amount must be a positive number greater than 0", field="amount")

    if not amount.is_finite():
        raise InvalidInput("Amount must be a positive number greater than 0", field="amount")

    amount = amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise InvalidInput("Amount must be a positive number greater than 0", field="amount")
    return amount


def normalize_requirement(value) -> str:
    if not isinstance(value, str):
        raise InvalidInput("Requirement must be between 1 and 1000 characters", field="requirement")
    text = value.strip()
    if not 1 <= len(text) <= Config.REQUIREMENT_MAX_LENGTH:
        raise InvalidInput(
            f"Requirement must be between 1 and {Config.REQUIREMENT_MAX_LENGTH} characters",
            field="requirement",
        )
    return text


def normalize_optional_email(value: Optional[str], field: str) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    email = value.strip() if isinstance(value, str) else value
    if not validate_email(email):
        raise InvalidInput(f"{field.replace('_', ' ').capitalize()} must be a valid email address", field=field)
    return email
