from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

ZERO = Decimal("0")


class CalculationMode(str, Enum):
    MONTO_FIJO = "MONTO_FIJO"
    PORCENTAJE_SALDO = "PORCENTAJE_SALDO"
    PORCENTAJE_MONTO_ORIGINAL = "PORCENTAJE_MONTO_ORIGINAL"


class Frequency(str, Enum):
    UNICA = "UNICA"
    DIARIA = "DIARIA"
    SEMANAL = "SEMANAL"
    MENSUAL = "MENSUAL"


@dataclass(frozen=True)
class LateFeeConfig:
    code: str
    name: str
    mode: CalculationMode
    value: Decimal
    grace_days: int = 0
    frequency: Frequency = Frequency.UNICA
    max_amount: Decimal | None = None
    max_percent: Decimal | None = None
    cumulative: bool = False
    active: bool = True

    @classmethod
    def from_dict(cls, d: dict) -> LateFeeConfig:
        """Build from the ``mora`` / ``mora_default`` section of a YAML file."""
        return cls(
            code=str(d.get("codigo", "MORA")),
            name=d.get("nombre", "Mora"),
            mode=CalculationMode(d.get("tipo_calculo", CalculationMode.MONTO_FIJO.value)),
            value=Decimal(str(d.get("valor", "0"))),
            grace_days=int(d.get("dias_gracia", 0)),
            frequency=Frequency(d.get("frecuencia", Frequency.UNICA.value)),
            max_amount=_opt_decimal(d.get("mora_maxima")),
            max_percent=_opt_decimal(d.get("porcentaje_maximo")),
            cumulative=bool(d.get("es_acumulativa", False)),
            active=bool(d.get("activo", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "codigo": self.code,
            "nombre": self.name,
            "tipo_calculo": self.mode.value,
            "valor": str(self.value),
            "dias_gracia": self.grace_days,
            "frecuencia": self.frequency.value,
            "mora_maxima": None if self.max_amount is None else str(self.max_amount),
            "porcentaje_maximo": None if self.max_percent is None else str(self.max_percent),
            "es_acumulativa": self.cumulative,
            "activo": self.active,
        }


@dataclass(frozen=True)
class OverdueInvoice:
    document_id: int | None
    generation_code: str
    total: Decimal
    emission_date: date
    due_date: date
    accumulated_fee: Decimal = ZERO


@dataclass(frozen=True)
class AffectedInvoice:
    document_id: int | None
    original_amount: Decimal
    fee: Decimal
    days_late: int


@dataclass(frozen=True)
class LateFeeResult:
    applies: bool
    amount: Decimal = ZERO
    days_late: int = 0
    invoices: list[AffectedInvoice] = field(default_factory=list)
    config: LateFeeConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "applies": self.applies,
            "amount": f"{self.amount:.2f}",
            "days_late": self.days_late,
            "invoices": [
                {
                    "document_id": i.document_id,
                    "original_amount": f"{i.original_amount:.2f}",
                    "fee": f"{i.fee:.2f}",
                    "days_late": i.days_late,
                }
                for i in self.invoices
            ],
            "config": self.config.to_dict() if self.config else None,
        }


def _opt_decimal(value: object) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))
