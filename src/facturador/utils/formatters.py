from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")
_LINE = Decimal("0.0001")

_UNITS = (
    "", "UN", "DOS", "TRES", "CUATRO", "CINCO", "SEIS", "SIETE", "OCHO", "NUEVE",
)
_TEENS = {
    10: "DIEZ", 11: "ONCE", 12: "DOCE", 13: "TRECE", 14: "CATORCE", 15: "QUINCE",
}
_TENS = (
    "", "", "VEINTE", "TREINTA", "CUARENTA", "CINCUENTA", "SESENTA", "SETENTA",
    "OCHENTA", "NOVENTA",
)
_HUNDREDS = (
    "", "CIENTO", "DOSCIENTOS", "TRESCIENTOS", "CUATROCIENTOS", "QUINIENTOS",
    "SEISCIENTOS", "SETECIENTOS", "OCHOCIENTOS", "NOVECIENTOS",
)


def round2(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def round4(value: Decimal) -> Decimal:
    """Round to the 4 decimals MH accepts on line values, half up."""
    return Decimal(value).quantize(_LINE, rounding=ROUND_HALF_UP)


def format_usd(value: str | Decimal) -> str:
    """Format a numeric value as $X,XXX.XX."""
    d = Decimal(str(value))
    return f"${d:,.2f}"


def _tens(n: int) -> str:
    if n < 10:
        return _UNITS[n]
    if n in _TEENS:
        return _TEENS[n]
    if n < 20:
        return "DIECI" + _UNITS[n - 10]
    tens, unit = divmod(n, 10)
    if tens == 2 and unit:
        return "VEINTI" + _UNITS[unit]
    if unit:
        return f"{_TENS[tens]} Y {_UNITS[unit]}"
    return _TENS[tens]


def _hundreds(n: int) -> str:
    if n == 100:
        return "CIEN"
    hundreds, rest = divmod(n, 100)
    parts = [_HUNDREDS[hundreds], _tens(rest)]
    return " ".join(p for p in parts if p)


def _integer_words(n: int) -> str:
    if n == 0:
        return "CERO"
    millions, rest = divmod(n, 1_000_000)
    thousands, units = divmod(rest, 1000)
    parts: list[str] = []
    if millions == 1:
        parts.append("UN MILLON")
    elif millions:
        parts.append(f"{_integer_words(millions)} MILLONES")
    if thousands == 1:
        parts.append("MIL")
    elif thousands:
        parts.append(f"{_hundreds(thousands)} MIL")
    if units:
        parts.append(_hundreds(units))
    return " ".join(parts)


def amount_in_words(value: Decimal | str) -> str:
    """Spell a dollar amount the way MH expects in ``totalLetras``.

    >>> amount_in_words(Decimal("1234.56"))
    'MIL DOSCIENTOS TREINTA Y CUATRO DOLARES CON 56/100'
    """
    amount = round2(Decimal(str(value)))
    integer = int(amount)
    cents = int((amount - integer) * 100)
    currency = "DOLAR" if integer == 1 else "DOLARES"
    return f"{_integer_words(integer)} {currency} CON {cents:02d}/100"
