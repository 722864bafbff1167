from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from facturador.config import IVA_RATE
from facturador.models.document import (
    DocumentState,
    DocumentType,
    LineItem,
    TaxDocument,
    TaxTreatment,
)
from facturador.models.emitter import Branch, Emitter
from facturador.models.late_fee import LateFeeResult
from facturador.models.receiver import DOC_TYPE_NIT, Receiver
from facturador.services.context import Services
from facturador.services.document_builder import (
    BuiltDocument,
    build_document,
    check_receiver,
    line_net,
    sv_now,
)
from facturador.services.exceptions import (
    ConflictError,
    NotFoundError,
    SigningError,
    TransmissionError,
    ValidationError,
)
from facturador.services.late_fee import compute_late_fee, late_fee_line
from facturador.services.mh_client import TransmissionResult
from facturador.services.void_builder import new_generation_code
from facturador.utils.formatters import round2, round4
from facturador.utils.sequence import Reservation

logger = logging.getLogger(__name__)

# Types a sale can be issued as
SALE_TYPES = (DocumentType.FACTURA, DocumentType.CREDITO_FISCAL, DocumentType.SUJETO_EXCLUIDO)
# Originals a credit note may reference
CREDITABLE_TYPES = (DocumentType.CREDITO_FISCAL, DocumentType.COMPROBANTE_RETENCION)

_CAP_TOLERANCE = Decimal("0.01")


@dataclass
class IssueRequest:
    items: list[LineItem]
    client: str | None = None
    receiver: Receiver | None = None
    doc_type: DocumentType | None = None
    branch: str | None = None
    condition: int = 1  # 1 contado, 2 crédito, 3 otro
    observations: str | None = None
    payments: list[dict[str, Any]] | None = None
    apply_late_fee: bool = False
    iva_withheld: Decimal = Decimal("0")
    income_withheld: Decimal = Decimal("0")


@dataclass(frozen=True)
class CreditNoteLine:
    source_line: int  # 1-based numItem of the original
    quantity: Decimal
    description: str | None = None


@dataclass
class CreditNoteRequest:
    original_id: int
    lines: list[CreditNoteLine]
    branch: str | None = None
    observations: str | None = None


@dataclass
class IssueResult:
    success: bool
    id: int | None
    generation_code: str | None
    control_number: str | None
    state: DocumentState
    seal: str | None = None
    total_to_pay: Decimal | None = None
    error: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def status_code(self) -> int:
        return 201 if self.success else 200

    @classmethod
    def from_document(cls, doc: TaxDocument, error: str | None = None) -> IssueResult:
        return cls(
            success=doc.state is DocumentState.PROCESADO,
            id=doc.id,
            generation_code=doc.generation_code,
            control_number=doc.control_number,
            state=doc.state,
            seal=doc.seal,
            total_to_pay=doc.totals.total_to_pay,
            error=error,
            errors=list(doc.observations),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "id": self.id,
            "generation_code": self.generation_code,
            "control_number": self.control_number,
            "state": self.state.value,
            "seal": self.seal,
            "total_to_pay": None if self.total_to_pay is None else f"{self.total_to_pay:.2f}",
            "error": self.error,
            "errors": self.errors,
        }


# --- Lookups ---


def list_documents(
    services: Services,
    state: DocumentState | None = None,
    doc_type: DocumentType | None = None,
    client: str | None = None,
) -> list[TaxDocument]:
    return services.documents.filter(
        lambda d: (state is None or d.state is state)
        and (doc_type is None or d.doc_type is doc_type)
        and (client is None or d.client == client)
    )


def find_document(services: Services, document_id: int) -> TaxDocument:
    doc = services.documents.get(document_id)
    if doc is None:
        raise NotFoundError(f"Documento {document_id} no encontrado")
    return doc


def find_by_generation_code(services: Services, generation_code: str) -> TaxDocument | None:
    code = generation_code.upper()
    return services.documents.find(lambda d: d.generation_code == code)


# --- Shared steps ---


def _load_emitter(services: Services) -> tuple[dict[str, Any], Emitter]:
    try:
        raw = services.load_emitter()
    except FileNotFoundError:
        raise NotFoundError("Configuración del emisor no encontrada (emitter.yaml)") from None
    return raw, Emitter.from_dict(raw)


def _branch(emitter: Emitter, code: str | None) -> Branch:
    try:
        return emitter.branch(code)
    except KeyError:
        raise NotFoundError(f"Sucursal no encontrada: {code or '(ninguna configurada)'}") from None


def _save_issued(doc: TaxDocument, services: Services) -> None:
    """Write the accepted document, its signature and seal to the issued dir."""
    try:
        out_dir = services.issued_path()
        out_dir.mkdir(parents=True, exist_ok=True)
        out_path = out_dir / f"{doc.generation_code}.json"
        body = {
            "documento": doc.payload,
            "firmaElectronica": doc.signed,
            "selloRecibido": doc.seal,
        }
        out_path.write_text(json.dumps(body, indent=2, ensure_ascii=False) + "\n")
    except Exception:
        logger.warning("Failed to save issued document %s", doc.generation_code, exc_info=True)


def _notify(doc: TaxDocument, services: Services) -> None:
    try:
        services.notify(doc)
    except Exception:
        logger.warning("Failed to queue notification for %s", doc.generation_code, exc_info=True)


def _sign_and_transmit(
    doc: TaxDocument,
    services: Services,
    nit: str,
    reservation: Reservation | None = None,
) -> IssueResult:
    """DRAFT → SIGNED → PROCESSED/REJECTED, persisting after every step.

    The reservation (when given) is consumed once a transmission has been
    attempted, whatever its outcome.
    """
    doc.attempts += 1
    try:
        signed = services.sign(nit, doc.payload or {})
    except SigningError as exc:
        doc.last_error = exc.message
        services.documents.save(doc)
        logger.warning("Signing failed for %s: %s", doc.generation_code, exc.message)
        return IssueResult.from_document(doc, error=exc.message)

    doc.signed = signed
    doc.state = DocumentState.FIRMADO
    doc.last_error = None
    services.documents.save(doc)
    logger.info("Document %s signed", doc.generation_code)

    try:
        result = services.transmit_document(
            signed,
            ambiente=services.ambiente,
            nit=nit,
            doc_type=doc.doc_type.value,
            version=doc.doc_type.version,
            generation_code=doc.generation_code,
        )
    except TransmissionError as exc:
        if reservation is not None:
            reservation.consume()
        doc.state = DocumentState.RECHAZADO
        doc.last_error = exc.message
        services.documents.save(doc)
        logger.warning("Transmission failed for %s: %s", doc.generation_code, exc.message)
        return IssueResult.from_document(doc, error=exc.message)

    if reservation is not None:
        reservation.consume()
    doc.seal = result.seal
    doc.processed_at = result.processed_at
    doc.message_code = result.message_code
    doc.message_description = result.message_description
    doc.observations = list(result.observations)
    if result.success:
        doc.state = DocumentState.PROCESADO
        doc.last_error = None
    else:
        doc.state = DocumentState.RECHAZADO
        doc.last_error = result.error
    services.documents.save(doc)
    logger.info("Document %s %s", doc.generation_code, doc.state.value)

    if result.success:
        _save_issued(doc, services)
        _notify(doc, services)
    return IssueResult.from_document(doc, error=result.error)


def _terms(
    condition: int,
    observations: str | None,
    payments: Sequence[dict[str, Any]] | None,
    iva_withheld: Decimal,
    income_withheld: Decimal,
    related: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    terms: dict[str, Any] = {
        "condition": condition,
        "observations": observations,
        "payments": list(payments) if payments else None,
        "iva_withheld": str(iva_withheld),
        "income_withheld": str(income_withheld),
        "related": related,
    }
    terms.update(extra)
    return terms


def _build_from_stored(
    doc: TaxDocument,
    emitter: Emitter,
    branch: Branch,
    ambiente: str,
    now: datetime | None = None,
) -> BuiltDocument:
    terms = doc.terms
    return build_document(
        doc.doc_type,
        emitter=emitter,
        branch=branch,
        receiver=Receiver.from_dict(doc.receiver),
        items=doc.items,
        generation_code=doc.generation_code,
        control_number=doc.control_number,
        ambiente=ambiente,
        condition=int(terms.get("condition", 1)),
        observations=terms.get("observations"),
        related=terms.get("related"),
        payments=terms.get("payments"),
        iva_withheld=Decimal(str(terms.get("iva_withheld", "0"))),
        income_withheld=Decimal(str(terms.get("income_withheld", "0"))),
        now=now,
    )


def _new_document(
    doc_type: DocumentType,
    services: Services,
    raw_emitter: dict[str, Any],
    emitter: Emitter,
    branch: Branch,
    receiver: Receiver,
    items: list[LineItem],
    terms: dict[str, Any],
    reservation: Reservation,
    *,
    client: str | None,
    related_code: str | None = None,
    now: datetime | None = None,
) -> IssueResult:
    ts = sv_now(now)
    doc = TaxDocument(
        generation_code=new_generation_code(),
        control_number=reservation.control_number,
        doc_type=doc_type,
        env=services.env,
        branch=branch.code,
        block_id=reservation.block.id,
        client=client,
        emitter=raw_emitter,
        receiver=receiver.to_dict(),
        items=items,
        terms=terms,
        emitted_at=ts.isoformat(),
        related_code=related_code,
    )
    built = _build_from_stored(doc, emitter, branch, services.ambiente, now=ts)
    doc.payload = built.document
    doc.totals = built.totals
    services.documents.add(doc)
    logger.info(
        "Draft %s created: %s %s total %s",
        doc.id, doc_type.value, doc.control_number, built.totals.total_to_pay,
    )
    return _sign_and_transmit(doc, services, emitter.nit_digits, reservation)


# --- Invoices ---


def resolve_doc_type(explicit: DocumentType | None, receiver: Receiver) -> DocumentType:
    """Explicit type when given, else CCF for receivers with NIT and NRC, else FC."""
    if explicit is not None:
        if explicit not in SALE_TYPES:
            raise ValidationError(
                f"Tipo de documento no permitido para una venta: {explicit.value}"
            )
        return explicit
    if receiver.has_fiscal_credit_ids:
        return DocumentType.CREDITO_FISCAL
    return DocumentType.FACTURA


def _receiver_for(request: IssueRequest, services: Services) -> Receiver:
    if request.client:
        try:
            data = services.load_client(request.client)
        except FileNotFoundError:
            raise NotFoundError(f"Cliente no encontrado: {request.client}") from None
        base = Receiver.from_dict(data)
        if request.receiver is None:
            return base
        # Explicit fields on the request win over the client file
        merged = {**base.to_dict(), **{k: v for k, v in request.receiver.to_dict().items() if v}}
        return Receiver.from_dict(merged)
    return request.receiver or Receiver()


def issue_invoice(
    request: IssueRequest,
    services: Services,
    *,
    today: date | None = None,
    now: datetime | None = None,
) -> IssueResult:
    """Issue a sale (FC, CCF or FSE) for a client or a walk-in customer.

    Validation failures raise before anything is persisted. Signing and
    transmission failures come back as an unsuccessful result with the
    document's state saved.
    """
    if not request.items:
        raise ValidationError("El documento debe tener al menos un ítem")
    if request.condition == 2 and not request.client:
        raise ValidationError("Una venta al crédito requiere un cliente registrado")

    raw_emitter, emitter = _load_emitter(services)
    branch = _branch(emitter, request.branch)
    receiver = _receiver_for(request, services)
    doc_type = resolve_doc_type(request.doc_type, receiver)
    check_receiver(doc_type, receiver)

    items = list(request.items)
    extra_terms: dict[str, Any] = {}
    fee: LateFeeResult | None = None
    if request.apply_late_fee and request.client:
        fee = compute_late_fee(
            request.client,
            services.documents.all(),
            today or sv_now(now).date(),
            load_client=services.load_client,
            load_emitter=services.load_emitter,
        )
        if fee.applies:
            items.append(late_fee_line(fee))
            extra_terms["mora"] = fee.to_dict()

    terms = _terms(
        request.condition,
        request.observations,
        request.payments,
        request.iva_withheld,
        request.income_withheld,
        **extra_terms,
    )
    with services.blocks.reserve(branch, doc_type.value) as reservation:
        result = _new_document(
            doc_type, services, raw_emitter, emitter, branch, receiver, items, terms,
            reservation, client=request.client, now=now,
        )
    if result.success and fee is not None and fee.applies:
        _record_late_fee(services, fee)
    return result


def _record_late_fee(services: Services, fee: LateFeeResult) -> None:
    """Add each invoice's charged fee to its ``mora_acumulada``."""
    with services.documents.locked():
        for affected in fee.invoices:
            if affected.document_id is None:
                continue
            doc = services.documents.get(affected.document_id)
            if doc is None:
                continue
            previous = Decimal(str(doc.terms.get("mora_acumulada", "0")))
            doc.terms["mora_acumulada"] = f"{previous + affected.fee:.2f}"
            services.documents.save(doc)


# --- Credit notes ---


def _credit_lines(original: TaxDocument, lines: Sequence[CreditNoteLine]) -> list[LineItem]:
    if not lines:
        raise ValidationError("La nota de crédito debe tener al menos un ítem")
    items: list[LineItem] = []
    for line in lines:
        if not 1 <= line.source_line <= len(original.items):
            raise ValidationError(f"Línea {line.source_line} no existe en el documento original")
        source = original.items[line.source_line - 1]
        if line.quantity <= 0:
            raise ValidationError(f"Línea {line.source_line}: la cantidad debe ser positiva")
        if line.quantity > source.quantity:
            raise ValidationError(
                f"Línea {line.source_line}: cantidad {line.quantity} excede la original "
                f"({source.quantity})"
            )
        discount = round4(source.discount * line.quantity / source.quantity)
        items.append(
            LineItem(
                description=line.description or source.description,
                quantity=line.quantity,
                unit_price=source.unit_price,
                discount=discount,
                treatment=source.treatment,
                item_type=source.item_type,
                unit=source.unit,
                code=source.code,
                catalog_id=source.catalog_id,
                source_line=line.source_line,
            )
        )
    return items


def credit_note_total(items: Sequence[LineItem]) -> Decimal:
    """Taxed + exempt + not-subject + 13 % IVA on the taxed part."""
    by_treatment: dict[TaxTreatment, Decimal] = {}
    for item in items:
        net, _ = line_net(item)
        by_treatment[item.treatment] = by_treatment.get(item.treatment, Decimal("0")) + net
    taxed = round2(by_treatment.get(TaxTreatment.GRAVADO, Decimal("0")))
    exempt = round2(by_treatment.get(TaxTreatment.EXENTO, Decimal("0")))
    not_subject = round2(by_treatment.get(TaxTreatment.NO_SUJETO, Decimal("0")))
    return taxed + exempt + not_subject + round2(taxed * IVA_RATE)


def credited_amount(services: Services, original: TaxDocument) -> Decimal:
    """Sum of PROCESSED credit notes already issued against *original*."""
    notes = services.documents.filter(
        lambda d: d.doc_type is DocumentType.NOTA_CREDITO
        and d.state is DocumentState.PROCESADO
        and d.related_code == original.generation_code
    )
    return sum((n.totals.total_to_pay for n in notes), Decimal("0"))


def _credit_note_receiver(original: TaxDocument) -> Receiver:
    receptor = (original.payload or {}).get("receptor") or {}
    receiver = Receiver.from_payload(receptor)
    if not receiver.has_fiscal_credit_ids:
        raise ValidationError("El documento original no tiene NIT y NRC del receptor")
    return Receiver(**{**receiver.to_dict(), "tipo_documento": DOC_TYPE_NIT})


def _check_creditable(original: TaxDocument) -> None:
    if original.doc_type not in CREDITABLE_TYPES:
        raise ValidationError(
            "Solo se pueden emitir notas de crédito sobre Comprobantes de Crédito Fiscal "
            "o Comprobantes de Retención"
        )
    if original.state is DocumentState.INVALIDADO or original.voided_at:
        raise ValidationError("El documento original está anulado")
    if original.state is not DocumentState.PROCESADO:
        raise ValidationError("El documento original no ha sido procesado por MH")
    if not original.generation_code:
        raise ValidationError("El documento original no tiene código de generación")


def _check_credit_balance(services: Services, original_code: str, total: Decimal) -> None:
    """Re-read the original and refuse a note its remaining balance cannot absorb.

    Must run under the numbering lock so two notes cannot spend the same balance.
    """
    original = find_by_generation_code(services, original_code)
    if original is None:
        raise NotFoundError(f"Documento original {original_code} no encontrado")
    _check_creditable(original)
    available = original.totals.total_to_pay - credited_amount(services, original)
    if total > available + _CAP_TOLERANCE:
        raise ConflictError(
            f"El total de la nota de crédito ({total:.2f}) excede el saldo disponible "
            f"del documento original ({available:.2f})"
        )


def issue_credit_note(
    request: CreditNoteRequest,
    services: Services,
    *,
    now: datetime | None = None,
) -> IssueResult:
    """Issue a credit note (05) returning lines of an accepted CCF."""
    original = find_document(services, request.original_id)
    _check_creditable(original)

    items = _credit_lines(original, request.lines)
    receiver = _credit_note_receiver(original)
    total = credit_note_total(items)

    raw_emitter, emitter = _load_emitter(services)
    branch = _branch(emitter, request.branch or original.branch)
    related = [
        {
            "tipoDocumento": original.doc_type.value,
            "tipoGeneracion": 2,
            "numeroDocumento": original.generation_code,
            "fechaEmision": original.emission_date,
        }
    ]
    terms = _terms(1, request.observations, None, Decimal("0"), Decimal("0"), related)
    with services.blocks.reserve(branch, DocumentType.NOTA_CREDITO.value) as reservation:
        _check_credit_balance(services, original.generation_code, total)
        return _new_document(
            DocumentType.NOTA_CREDITO, services, raw_emitter, emitter, branch, receiver,
            items, terms, reservation,
            client=original.client, related_code=original.generation_code, now=now,
        )


# --- Resend ---


def resend_document(
    document_id: int,
    services: Services,
    *,
    now: datetime | None = None,
) -> IssueResult:
    """Rebuild, re-sign and re-transmit a DRAFT, SIGNED or REJECTED document.

    Keeps the generation code and control number; the numbering block is not
    touched.
    """
    doc = find_document(services, document_id)
    if doc.state is DocumentState.PROCESADO:
        raise ValidationError("El documento ya fue procesado por MH")
    if doc.state is DocumentState.INVALIDADO or doc.voided_at:
        raise ValidationError("El documento está anulado")
    if not doc.generation_code or not doc.control_number:
        raise ValidationError("El documento no tiene código de generación o número de control")

    is_note = doc.doc_type is DocumentType.NOTA_CREDITO
    # A credit note spends the original's balance, checked under the numbering lock
    with services.blocks.locked() if is_note else nullcontext():
        if is_note:
            if not doc.related_code:
                raise ValidationError("La nota de crédito no tiene documento relacionado")
            _check_credit_balance(services, doc.related_code, credit_note_total(doc.items))
        emitter = Emitter.from_dict(doc.emitter)
        branch = _branch(emitter, doc.branch)
        built = _build_from_stored(doc, emitter, branch, services.ambiente, now=now)
        doc.payload = built.document
        doc.totals = built.totals
        doc.state = DocumentState.BORRADOR
        doc.signed = None
        services.documents.save(doc)
        logger.info("Resending document %s (%s)", doc.id, doc.generation_code)
        return _sign_and_transmit(doc, services, emitter.nit_digits)


# --- Status query ---


def query_status(document_id: int, services: Services) -> TransmissionResult:
    """Ask MH for the document's status and reconcile a missed acceptance.

    A document left SIGNED or REJECTED after a timeout may have been accepted
    anyway; when MH reports it PROCESSED the local record takes its seal.
    """
    doc = find_document(services, document_id)
    nit = Emitter.from_dict(doc.emitter).nit_digits
    result = services.query(
        ambiente=services.ambiente,
        nit=nit,
        doc_type=doc.doc_type.value,
        generation_code=doc.generation_code,
    )
    if result.success and doc.state in (DocumentState.FIRMADO, DocumentState.RECHAZADO):
        doc.state = DocumentState.PROCESADO
        doc.seal = result.seal
        doc.processed_at = result.processed_at
        doc.message_code = result.message_code
        doc.message_description = result.message_description
        doc.observations = list(result.observations)
        doc.last_error = None
        services.documents.save(doc)
        logger.info("Document %s reconciled as PROCESADO from MH status", doc.generation_code)
        _save_issued(doc, services)
    return result
