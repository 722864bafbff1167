from __future__ import annotations

import re
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation


def validate_amount(value: str, *, field_name: str = "monto", allow_zero: bool = True) -> Decimal:
    """Parse a non-negative monetary value.

    Raises ValueError for non-numeric, non-finite or negative values, and for
    zero when *allow_zero* is False.
    """
    try:
        d = Decimal(str(value).strip())
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"{field_name}: valor numérico inválido '{value}'") from None
    if d < 0 or (d == 0 and not allow_zero):
        raise ValueError(f"{field_name}: el valor debe ser positivo")
    return d


def validate_monetary(value: str) -> str:
    """Validate a strictly positive amount and normalize it to 2 decimals."""
    d = validate_amount(value, allow_zero=False)
    return f"{d:.2f}"


def validate_quantity(value: str) -> Decimal:
    """Quantities must be strictly positive."""
    return validate_amount(value, field_name="cantidad", allow_zero=False)


def validate_date(value: str) -> str:
    """Validate an ISO date string (YYYY-MM-DD)."""
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Fecha inválida: '{value}'. Use YYYY-MM-DD.") from None
    return value


def validate_nit(value: str) -> str:
    """Normalize a NIT: dashes removed, 9 or 14 digits."""
    digits = value.replace("-", "").strip()
    if not re.fullmatch(r"\d{9}|\d{14}", digits):
        raise ValueError("NIT: debe tener 9 o 14 dígitos")
    return digits


def validate_nrc(value: str) -> str:
    """Normalize an NRC: dashes removed, 1 to 8 digits."""
    digits = value.replace("-", "").strip()
    if not re.fullmatch(r"\d{1,8}", digits):
        raise ValueError("NRC: debe tener entre 1 y 8 dígitos")
    return digits


def validate_generation_code(value: str) -> str:
    """Validate a codigoGeneracion (UUID) and return it upper-cased."""
    try:
        parsed = uuid.UUID(value.strip())
    except (ValueError, AttributeError):
        raise ValueError(f"Código de generación inválido: '{value}'") from None
    return str(parsed).upper()


def validate_percent(value: str) -> Decimal:
    """Validate a percentage value (0-100)."""
    try:
        d = Decimal(value)
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"Porcentaje inválido: '{value}'") from None
    if d < 0 or d > 100:
        raise ValueError("El porcentaje debe estar entre 0 y 100")
    return d
