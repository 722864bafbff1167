from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from facturador.models.document import DocumentState, DocumentType, TaxDocument, TaxTreatment, Totals
from facturador.models.late_fee import CalculationMode, Frequency, LateFeeConfig
from facturador.services.exceptions import NotFoundError
from facturador.services.late_fee import (
    compute_late_fee,
    late_fee_line,
    overdue_invoices,
    resolve_config,
)

TODAY = date(2025, 3, 16)


def _invoice(
    doc_id: int,
    emitted: str,
    total: str = "100.00",
    *,
    client: str = "la-ceiba",
    state: DocumentState = DocumentState.PROCESADO,
    doc_type: DocumentType = DocumentType.CREDITO_FISCAL,
    terms: dict | None = None,
) -> TaxDocument:
    return TaxDocument(
        id=doc_id,
        generation_code=f"CODE-{doc_id}",
        control_number=f"DTE-{doc_type.value}-M001P001-{doc_id:015d}",
        doc_type=doc_type,
        env="pruebas",
        branch="CM",
        state=state,
        client=client,
        totals=Totals(total_to_pay=Decimal(total)),
        emitted_at=f"{emitted}T09:00:00-06:00",
        terms=terms or {},
    )


def _config(**overrides) -> LateFeeConfig:
    base = {
        "code": "MORA",
        "name": "Mora",
        "mode": CalculationMode.MONTO_FIJO,
        "value": Decimal("5"),
        "grace_days": 5,
        "frequency": Frequency.DIARIA,
    }
    base.update(overrides)
    return LateFeeConfig(**base)


class TestComputeLateFee:
    def test_fixed_daily(self):
        # Due 2025-03-06, ten days late on 2025-03-16
        result = compute_late_fee("la-ceiba", [_invoice(1, "2025-03-01")], TODAY, config=_config())
        assert result.applies
        assert result.amount == Decimal("50.00")
        assert result.days_late == 10
        assert result.invoices[0].document_id == 1

    def test_within_grace(self):
        result = compute_late_fee("la-ceiba", [_invoice(1, "2025-03-12")], TODAY, config=_config())
        assert not result.applies
        assert result.amount == Decimal("0")

    def test_ignores_other_clients_and_states(self):
        docs = [
            _invoice(1, "2025-03-01", client="otro"),
            _invoice(2, "2025-03-01", state=DocumentState.INVALIDADO),
            _invoice(3, "2025-03-01", state=DocumentState.RECHAZADO),
            _invoice(4, "2025-03-01", doc_type=DocumentType.NOTA_CREDITO),
        ]
        assert not compute_late_fee("la-ceiba", docs, TODAY, config=_config()).applies

    def test_sums_invoices(self):
        docs = [_invoice(1, "2025-03-01"), _invoice(2, "2025-03-06")]
        result = compute_late_fee("la-ceiba", docs, TODAY, config=_config())
        # 10 days + 5 days
        assert result.amount == Decimal("75.00")
        assert result.days_late == 10
        assert len(result.invoices) == 2

    def test_percentage_of_balance_monthly(self):
        cfg = _config(mode=CalculationMode.PORCENTAJE_SALDO, value=Decimal("2"), frequency=Frequency.MENSUAL)
        result = compute_late_fee("la-ceiba", [_invoice(1, "2025-01-01", "113.00")], TODAY, config=cfg)
        # due 2025-01-06, 69 days late -> 3 months
        assert result.amount == Decimal("6.78")

    def test_cumulative_includes_accumulated_fee(self):
        cfg = _config(mode=CalculationMode.PORCENTAJE_SALDO, value=Decimal("10"), frequency=Frequency.UNICA, cumulative=True)
        doc = _invoice(1, "2025-03-01", "100.00", terms={"mora_acumulada": "20"})
        result = compute_late_fee("la-ceiba", [doc], TODAY, config=cfg)
        assert result.amount == Decimal("12.00")

    def test_original_amount_ignores_accumulated(self):
        cfg = _config(
            mode=CalculationMode.PORCENTAJE_MONTO_ORIGINAL, value=Decimal("10"),
            frequency=Frequency.UNICA, cumulative=True,
        )
        doc = _invoice(1, "2025-03-01", "100.00", terms={"mora_acumulada": "20"})
        assert compute_late_fee("la-ceiba", [doc], TODAY, config=cfg).amount == Decimal("10.00")

    def test_weekly_periods_round_up(self):
        cfg = _config(frequency=Frequency.SEMANAL)
        # 10 days -> 2 weeks
        assert compute_late_fee("la-ceiba", [_invoice(1, "2025-03-01")], TODAY, config=cfg).amount == Decimal("10.00")

    def test_max_amount_cap(self):
        cfg = _config(max_amount=Decimal("20"))
        assert compute_late_fee("la-ceiba", [_invoice(1, "2025-03-01")], TODAY, config=cfg).amount == Decimal("20.00")

    def test_max_percent_cap(self):
        cfg = _config(max_percent=Decimal("10"))
        result = compute_late_fee("la-ceiba", [_invoice(1, "2025-03-01", "200.00")], TODAY, config=cfg)
        assert result.amount == Decimal("20.00")

    def test_no_config(self):
        result = compute_late_fee(
            "la-ceiba", [_invoice(1, "2025-03-01")], TODAY,
            load_client=lambda _: {}, load_emitter=lambda: {},
        )
        assert not result.applies
        assert result.config is None


class TestOverdueInvoices:
    def test_due_date_and_accumulated(self):
        doc = _invoice(1, "2025-03-01", terms={"mora_acumulada": "3.50"})
        [inv] = overdue_invoices("la-ceiba", _config(), [doc], TODAY)
        assert inv.due_date == date(2025, 3, 6)
        assert inv.accumulated_fee == Decimal("3.50")

    def test_boundary_is_exclusive(self):
        # Emitted exactly grace_days ago is not overdue yet
        assert overdue_invoices("la-ceiba", _config(), [_invoice(1, "2025-03-11")], TODAY) == []


class TestResolveConfig:
    def test_client_config_wins(self, client_dict, emitter_dict):
        client_dict["mora"] = {"codigo": "CLIENTE", "tipo_calculo": "MONTO_FIJO", "valor": "2"}
        emitter_dict["mora_default"] = {"codigo": "DEFAULT", "tipo_calculo": "MONTO_FIJO", "valor": "1"}
        cfg = resolve_config("la-ceiba", load_client=lambda _: client_dict, load_emitter=lambda: emitter_dict)
        assert cfg.code == "CLIENTE"

    def test_inactive_client_falls_back_to_default(self, client_dict, emitter_dict):
        client_dict["mora"] = {"codigo": "CLIENTE", "activo": False}
        emitter_dict["mora_default"] = {"codigo": "DEFAULT", "valor": "1"}
        cfg = resolve_config("la-ceiba", load_client=lambda _: client_dict, load_emitter=lambda: emitter_dict)
        assert cfg.code == "DEFAULT"

    def test_inactive_default(self, client_dict, emitter_dict):
        emitter_dict["mora_default"] = {"codigo": "DEFAULT", "activo": False}
        assert resolve_config("la-ceiba", load_client=lambda _: client_dict, load_emitter=lambda: emitter_dict) is None

    def test_unknown_client(self):
        def missing(_):
            raise FileNotFoundError

        with pytest.raises(NotFoundError):
            resolve_config("nadie", load_client=missing, load_emitter=lambda: {})

    def test_missing_emitter_file(self):
        def missing():
            raise FileNotFoundError

        assert resolve_config(None, load_emitter=missing) is None


class TestLateFeeLine:
    def test_exempt_service_line(self):
        result = compute_late_fee("la-ceiba", [_invoice(1, "2025-03-01")], TODAY, config=_config())
        line = late_fee_line(result)
        assert line.unit_price == Decimal("50.00")
        assert line.treatment is TaxTreatment.EXENTO
        assert "10 días" in line.description
