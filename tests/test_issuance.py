from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest

from facturador.config import SV_TZ
from facturador.models.document import (
    DocumentState,
    DocumentType,
    LineItem,
    TaxDocument,
    Totals,
)
from facturador.models.receiver import Receiver
from facturador.services.exceptions import (
    CapacityError,
    ConflictError,
    NotFoundError,
    SigningError,
    TransmissionError,
    ValidationError,
)
from facturador.services.issuance import (
    CreditNoteLine,
    CreditNoteRequest,
    IssueRequest,
    credit_note_total,
    credited_amount,
    find_by_generation_code,
    find_document,
    issue_credit_note,
    issue_invoice,
    list_documents,
    query_status,
    resend_document,
    resolve_doc_type,
)
from facturador.utils.registry import JsonStore
from facturador.utils.sequence import BlockStore
from tests.conftest import accepted, rejected

NOW = datetime(2025, 3, 10, 9, 30, 0, tzinfo=SV_TZ)
LATE = datetime(2025, 3, 16, 9, 30, 0, tzinfo=SV_TZ)


def _block(services, doc_type="01"):
    return services.blocks.find_active_block("CM", doc_type)


def _ccf(services, quantity="2", price="50") -> int:
    item = LineItem(description="Enlace dedicado", quantity=Decimal(quantity), unit_price=Decimal(price))
    result = issue_invoice(IssueRequest(items=[item], client="la-ceiba"), services, now=NOW)
    assert result.success
    return result.id


class TestResolveDocType:
    def test_fiscal_receiver_gets_ccf(self, fiscal_receiver):
        assert resolve_doc_type(None, fiscal_receiver) is DocumentType.CREDITO_FISCAL

    def test_consumer_gets_fc(self, consumer_receiver):
        assert resolve_doc_type(None, consumer_receiver) is DocumentType.FACTURA

    def test_explicit(self, fiscal_receiver):
        assert resolve_doc_type(DocumentType.FACTURA, fiscal_receiver) is DocumentType.FACTURA

    def test_credit_note_not_a_sale(self):
        with pytest.raises(ValidationError, match="no permitido"):
            resolve_doc_type(DocumentType.NOTA_CREDITO, Receiver())


class TestIssueInvoice:
    def test_walk_in_consumer_invoice(self, services, service_item):
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)

        assert result.success
        assert result.status_code == 201
        assert result.state is DocumentState.PROCESADO
        assert result.control_number == "DTE-01-M001P001-000000000000001"
        assert result.total_to_pay == Decimal("25.00")
        assert result.seal == accepted().seal

        doc = find_document(services, result.id)
        assert doc.state is DocumentState.PROCESADO
        assert doc.attempts == 1
        assert doc.signed == services.sign.return_value
        assert doc.totals.tax == Decimal("2.88")
        assert doc.emitter["nrc"] == "1234567"
        assert doc.processed_at == "2025-03-10T10:15:00-06:00"
        assert _block(services).current == 1

    def test_calls_collaborators(self, services, service_item):
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)

        nit, payload = services.sign.call_args.args
        assert nit == "06140101901013"
        assert payload["identificacion"]["codigoGeneracion"] == result.generation_code
        kwargs = services.transmit_document.call_args.kwargs
        assert kwargs["ambiente"] == "00"
        assert kwargs["doc_type"] == "01"
        assert kwargs["version"] == 1
        assert kwargs["generation_code"] == result.generation_code
        services.notify.assert_called_once()

    def test_saves_issued_json(self, services, service_item):
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        path = services.issued_path() / f"{result.generation_code}.json"
        body = json.loads(path.read_text())
        assert body["selloRecibido"] == accepted().seal
        assert body["documento"]["identificacion"]["numeroControl"] == result.control_number

    def test_client_with_nrc_gets_ccf(self, services, taxed_item):
        result = issue_invoice(IssueRequest(items=[taxed_item], client="la-ceiba"), services, now=NOW)
        assert result.control_number.startswith("DTE-03-")
        assert result.total_to_pay == Decimal("113.00")
        doc = find_document(services, result.id)
        assert doc.client == "la-ceiba"
        assert doc.receiver["nrc"] == "6543210"

    def test_excluded_subject(self, services, service_item):
        result = issue_invoice(
            IssueRequest(items=[service_item], client="maria", doc_type=DocumentType.SUJETO_EXCLUIDO),
            services, now=NOW,
        )
        assert result.success
        assert result.control_number.startswith("DTE-14-")

    def test_numbers_are_sequential(self, services, service_item):
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        second = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        assert first.control_number.endswith("000000000000001")
        assert second.control_number.endswith("000000000000002")
        assert first.generation_code != second.generation_code
        assert _block(services).current == 2

    def test_receiver_override_merges_client(self, services, taxed_item):
        request = IssueRequest(
            items=[taxed_item], client="la-ceiba", receiver=Receiver(correo="otro@laceiba.com.sv"),
        )
        result = issue_invoice(request, services, now=NOW)
        doc = find_document(services, result.id)
        assert doc.receiver["correo"] == "otro@laceiba.com.sv"
        assert doc.receiver["nit"] == "06142505881021"

    def test_observations_and_withholding_kept_in_terms(self, services, taxed_item):
        request = IssueRequest(
            items=[taxed_item], client="la-ceiba", observations="Marzo", income_withheld=Decimal("10"),
        )
        result = issue_invoice(request, services, now=NOW)
        doc = find_document(services, result.id)
        assert doc.terms["observations"] == "Marzo"
        assert doc.terms["income_withheld"] == "10"
        assert result.total_to_pay == Decimal("103.00")


class TestIssueInvoiceFailures:
    def test_signing_failure_keeps_draft_and_number(self, services, service_item):
        services.sign.side_effect = SigningError("Servicio de firma caído")
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)

        assert not result.success
        assert result.state is DocumentState.BORRADOR
        assert result.error == "Servicio de firma caído"
        doc = find_document(services, result.id)
        assert doc.last_error == "Servicio de firma caído"
        assert doc.attempts == 1
        assert doc.signed is None
        services.transmit_document.assert_not_called()
        assert _block(services).current == 0

    def test_rejection_consumes_number(self, services, service_item):
        services.transmit_document.return_value = rejected()
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)

        assert not result.success
        assert result.status_code == 200
        assert result.state is DocumentState.RECHAZADO
        assert "YA EXISTE" in result.error
        assert result.errors == ["Campo numeroControl duplicado"]
        assert _block(services).current == 1
        services.notify.assert_not_called()
        assert not (services.issued_path() / f"{result.generation_code}.json").exists()

    def test_transport_failure_consumes_number(self, services, service_item):
        services.transmit_document.side_effect = TransmissionError("Timeout al comunicarse con MH")
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)

        assert result.state is DocumentState.RECHAZADO
        assert "Timeout" in result.error
        assert services.transmit_document.call_count == 1
        assert _block(services).current == 1
        doc = find_document(services, result.id)
        assert doc.signed is not None

    def test_notification_failure_does_not_fail_issuance(self, services, service_item):
        services.notify.side_effect = RuntimeError("queue full")
        assert issue_invoice(IssueRequest(items=[service_item]), services, now=NOW).success

    def test_no_items(self, services):
        with pytest.raises(ValidationError):
            issue_invoice(IssueRequest(items=[]), services)
        assert services.documents.all() == []

    def test_credit_sale_requires_client(self, services, service_item):
        with pytest.raises(ValidationError, match="crédito"):
            issue_invoice(IssueRequest(items=[service_item], condition=2), services)

    def test_unknown_client(self, services, service_item):
        with pytest.raises(NotFoundError, match="nadie"):
            issue_invoice(IssueRequest(items=[service_item], client="nadie"), services)

    def test_unknown_branch(self, services, service_item):
        with pytest.raises(NotFoundError, match="Sucursal"):
            issue_invoice(IssueRequest(items=[service_item], branch="XX"), services)

    def test_no_active_block(self, services, service_item):
        with pytest.raises(CapacityError):
            issue_invoice(IssueRequest(items=[service_item], branch="SA"), services)
        assert services.documents.all() == []
        services.sign.assert_not_called()

    def test_ccf_requires_nrc(self, services, service_item):
        with pytest.raises(ValidationError, match="NIT y NRC"):
            issue_invoice(
                IssueRequest(items=[service_item], client="maria", doc_type=DocumentType.CREDITO_FISCAL),
                services,
            )
        assert _block(services, "03").current == 0


class TestLateFeeOnIssuance:
    def test_adds_exempt_line(self, services, client_dict, taxed_item):
        client_dict["mora"] = {
            "codigo": "MORA-DIARIA",
            "tipo_calculo": "MONTO_FIJO",
            "valor": "5",
            "dias_gracia": 5,
            "frecuencia": "DIARIA",
        }
        services.documents.add(
            TaxDocument(
                generation_code="OLD",
                control_number="DTE-03-M001P001-000000000000099",
                doc_type=DocumentType.CREDITO_FISCAL,
                env="pruebas",
                branch="CM",
                state=DocumentState.PROCESADO,
                client="la-ceiba",
                totals=Totals(total_to_pay=Decimal("113.00")),
                emitted_at="2025-03-01T09:00:00-06:00",
            )
        )
        result = issue_invoice(
            IssueRequest(items=[taxed_item], client="la-ceiba", apply_late_fee=True),
            services, today=date(2025, 3, 16), now=NOW,
        )
        doc = find_document(services, result.id)
        assert len(doc.items) == 2
        assert doc.items[1].unit_price == Decimal("50.00")
        assert doc.terms["mora"]["amount"] == "50.00"
        # 113 for the service plus the exempt surcharge
        assert result.total_to_pay == Decimal("163.00")

    @staticmethod
    def _overdue_ccf(services) -> int:
        old = services.documents.add(
            TaxDocument(
                generation_code="OLD",
                control_number="DTE-03-M001P001-000000000000099",
                doc_type=DocumentType.CREDITO_FISCAL,
                env="pruebas",
                branch="CM",
                state=DocumentState.PROCESADO,
                client="la-ceiba",
                totals=Totals(total_to_pay=Decimal("113.00")),
                emitted_at="2025-03-01T09:00:00-06:00",
            )
        )
        return old.id

    def test_accepted_fee_recorded_on_overdue_invoice(self, services, client_dict, taxed_item):
        client_dict["mora"] = {"tipo_calculo": "MONTO_FIJO", "valor": "5", "dias_gracia": 5, "frecuencia": "DIARIA"}
        old_id = self._overdue_ccf(services)
        issue_invoice(
            IssueRequest(items=[taxed_item], client="la-ceiba", apply_late_fee=True),
            services, today=date(2025, 3, 16), now=LATE,
        )
        assert find_document(services, old_id).terms["mora_acumulada"] == "50.00"

    def test_rejected_issuance_records_nothing(self, services, client_dict, taxed_item):
        client_dict["mora"] = {"tipo_calculo": "MONTO_FIJO", "valor": "5", "dias_gracia": 5, "frecuencia": "DIARIA"}
        old_id = self._overdue_ccf(services)
        services.transmit_document.return_value = rejected()
        issue_invoice(
            IssueRequest(items=[taxed_item], client="la-ceiba", apply_late_fee=True),
            services, today=date(2025, 3, 16), now=LATE,
        )
        assert "mora_acumulada" not in find_document(services, old_id).terms

    def test_cumulative_fee_grows_with_each_charge(self, services, client_dict, taxed_item):
        client_dict["mora"] = {
            "tipo_calculo": "PORCENTAJE_SALDO",
            "valor": "10",
            "dias_gracia": 5,
            "es_acumulativa": True,
        }
        old_id = self._overdue_ccf(services)
        request = IssueRequest(items=[taxed_item], client="la-ceiba", apply_late_fee=True)

        first = issue_invoice(request, services, today=date(2025, 3, 16), now=LATE)
        assert find_document(services, first.id).terms["mora"]["amount"] == "11.30"
        second = issue_invoice(request, services, today=date(2025, 3, 16), now=LATE)
        # 10 % of 113.00 + 11.30 already charged
        assert find_document(services, second.id).terms["mora"]["amount"] == "12.43"
        assert find_document(services, old_id).terms["mora_acumulada"] == "23.73"

    def test_no_overdue_invoices(self, services, taxed_item):
        result = issue_invoice(
            IssueRequest(items=[taxed_item], client="la-ceiba", apply_late_fee=True),
            services, today=date(2025, 3, 16), now=NOW,
        )
        doc = find_document(services, result.id)
        assert len(doc.items) == 1
        assert "mora" not in doc.terms


class TestCreditNote:
    def test_partial_credit(self, services):
        original_id = _ccf(services)
        result = issue_credit_note(
            CreditNoteRequest(original_id=original_id, lines=[CreditNoteLine(1, Decimal("1"))]),
            services, now=NOW,
        )
        assert result.success
        assert result.control_number == "DTE-05-M001P001-000000000000001"
        assert result.total_to_pay == Decimal("56.50")

        note = find_document(services, result.id)
        original = find_document(services, original_id)
        assert note.related_code == original.generation_code
        assert note.client == "la-ceiba"
        related = note.payload["documentoRelacionado"][0]
        assert related["tipoDocumento"] == "03"
        assert related["fechaEmision"] == "2025-03-10"
        assert note.items[0].source_line == 1
        assert services.transmit_document.call_args.kwargs["doc_type"] == "05"

    def test_cap_across_notes(self, services):
        original_id = _ccf(services)
        line = [CreditNoteLine(1, Decimal("1"))]
        assert issue_credit_note(CreditNoteRequest(original_id, line), services, now=NOW).success
        assert issue_credit_note(CreditNoteRequest(original_id, line), services, now=NOW).success

        original = find_document(services, original_id)
        assert credited_amount(services, original) == Decimal("113.00")
        with pytest.raises(ConflictError, match="excede"):
            issue_credit_note(CreditNoteRequest(original_id, line), services, now=NOW)
        assert _block(services, "05").current == 2

    def test_rejected_notes_do_not_count(self, services):
        original_id = _ccf(services)
        services.transmit_document.return_value = rejected()
        issue_credit_note(CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("2"))]), services, now=NOW)
        services.transmit_document.return_value = accepted()
        result = issue_credit_note(
            CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("2"))]), services, now=NOW,
        )
        assert result.success

    def test_concurrent_notes_cannot_exceed_balance(self, services):
        original_id = _ccf(services)
        outcomes: list[object] = []
        lock = threading.Lock()

        def worker():
            # Stores per thread, like separate CLI/TUI processes
            own = replace(
                services,
                documents=JsonStore(services.documents.path, TaxDocument.from_dict),
                blocks=BlockStore(services.blocks.path),
            )
            request = CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("2"))])
            try:
                outcome: object = issue_credit_note(request, own, now=NOW).success
            except ConflictError:
                outcome = "excede"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("excede") == 1
        assert outcomes.count(True) == 1
        original = find_document(services, original_id)
        assert credited_amount(services, original) == Decimal("113.00")
        assert _block(services, "05").current == 1

    def test_quantity_over_original(self, services):
        original_id = _ccf(services)
        with pytest.raises(ValidationError, match="excede la original"):
            issue_credit_note(CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("3"))]), services)

    def test_unknown_line(self, services):
        original_id = _ccf(services)
        with pytest.raises(ValidationError, match="no existe"):
            issue_credit_note(CreditNoteRequest(original_id, [CreditNoteLine(2, Decimal("1"))]), services)

    def test_original_must_be_ccf(self, services, service_item):
        fc = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        with pytest.raises(ValidationError, match="Crédito Fiscal"):
            issue_credit_note(CreditNoteRequest(fc.id, [CreditNoteLine(1, Decimal("1"))]), services)

    def test_original_must_be_processed(self, services, taxed_item):
        services.transmit_document.return_value = rejected()
        result = issue_invoice(IssueRequest(items=[taxed_item], client="la-ceiba"), services, now=NOW)
        with pytest.raises(ValidationError, match="no ha sido procesado"):
            issue_credit_note(CreditNoteRequest(result.id, [CreditNoteLine(1, Decimal("1"))]), services)

    def test_unknown_original(self, services):
        with pytest.raises(NotFoundError):
            issue_credit_note(CreditNoteRequest(99, [CreditNoteLine(1, Decimal("1"))]), services)

    def test_discount_prorated(self):
        item = LineItem(
            description="x", quantity=Decimal("1"), unit_price=Decimal("100"), discount=Decimal("10"),
        )
        assert credit_note_total([item]) == Decimal("101.70")


class TestResend:
    def test_resend_after_signing_failure(self, services, service_item):
        services.sign.side_effect = SigningError("caído")
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        services.sign.side_effect = None

        result = resend_document(first.id, services, now=NOW)
        assert result.success
        assert result.generation_code == first.generation_code
        assert result.control_number == first.control_number
        doc = find_document(services, first.id)
        assert doc.attempts == 2
        assert _block(services).current == 0

    def test_resend_rejected_does_not_touch_block(self, services, service_item):
        services.transmit_document.return_value = rejected()
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        services.transmit_document.return_value = accepted()

        result = resend_document(first.id, services, now=NOW)
        assert result.success
        assert result.control_number == first.control_number
        assert _block(services).current == 1
        assert find_document(services, first.id).last_error is None

    def test_resend_credit_note_rechecks_balance(self, services):
        original_id = _ccf(services)
        full = CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("2"))])
        services.transmit_document.side_effect = TransmissionError("Timeout")
        failed = issue_credit_note(full, services, now=NOW)
        services.transmit_document.side_effect = None
        assert issue_credit_note(full, services, now=NOW).success
        calls = services.transmit_document.call_count

        with pytest.raises(ConflictError, match="excede"):
            resend_document(failed.id, services, now=NOW)
        assert services.transmit_document.call_count == calls
        original = find_document(services, original_id)
        assert credited_amount(services, original) == Decimal("113.00")
        assert find_document(services, failed.id).state is DocumentState.RECHAZADO

    def test_resend_credit_note_within_balance(self, services):
        original_id = _ccf(services)
        services.transmit_document.side_effect = TransmissionError("Timeout")
        failed = issue_credit_note(
            CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("1"))]), services, now=NOW,
        )
        services.transmit_document.side_effect = None
        result = resend_document(failed.id, services, now=NOW)
        assert result.success
        assert result.total_to_pay == Decimal("56.50")

    def test_resend_credit_note_of_voided_original(self, services):
        original_id = _ccf(services)
        services.transmit_document.side_effect = TransmissionError("Timeout")
        failed = issue_credit_note(
            CreditNoteRequest(original_id, [CreditNoteLine(1, Decimal("1"))]), services, now=NOW,
        )
        services.transmit_document.side_effect = None
        original = find_document(services, original_id)
        original.state = DocumentState.INVALIDADO
        services.documents.save(original)
        with pytest.raises(ValidationError, match="original está anulado"):
            resend_document(failed.id, services, now=NOW)

    def test_cannot_resend_processed(self, services, service_item):
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        with pytest.raises(ValidationError, match="ya fue procesado"):
            resend_document(first.id, services)

    def test_cannot_resend_voided(self, services, service_item):
        services.transmit_document.return_value = rejected()
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        doc = find_document(services, first.id)
        doc.state = DocumentState.INVALIDADO
        services.documents.save(doc)
        with pytest.raises(ValidationError, match="anulado"):
            resend_document(first.id, services)


class TestLookups:
    def test_list_filters(self, services, service_item, taxed_item):
        issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        issue_invoice(IssueRequest(items=[taxed_item], client="la-ceiba"), services, now=NOW)
        assert len(list_documents(services)) == 2
        assert len(list_documents(services, doc_type=DocumentType.CREDITO_FISCAL)) == 1
        assert len(list_documents(services, client="la-ceiba")) == 1
        assert list_documents(services, state=DocumentState.RECHAZADO) == []

    def test_find_by_generation_code_case_insensitive(self, services, service_item):
        result = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        assert find_by_generation_code(services, result.generation_code.lower()).id == result.id

    def test_find_missing(self, services):
        with pytest.raises(NotFoundError):
            find_document(services, 1)


class TestQueryStatus:
    def test_reconciles_missed_acceptance(self, services, service_item):
        services.transmit_document.side_effect = TransmissionError("Timeout")
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)

        result = query_status(first.id, services)
        assert result.success
        kwargs = services.query.call_args.kwargs
        assert kwargs == {
            "ambiente": "00",
            "nit": "06140101901013",
            "doc_type": "01",
            "generation_code": first.generation_code,
        }
        doc = find_document(services, first.id)
        assert doc.state is DocumentState.PROCESADO
        assert doc.seal == accepted().seal
        assert doc.last_error is None
        assert (services.issued_path() / f"{first.generation_code}.json").exists()

    def test_rejected_status_leaves_document(self, services, service_item):
        services.transmit_document.return_value = rejected()
        first = issue_invoice(IssueRequest(items=[service_item]), services, now=NOW)
        services.query.return_value = rejected()
        assert not query_status(first.id, services).success
        assert find_document(services, first.id).state is DocumentState.RECHAZADO
