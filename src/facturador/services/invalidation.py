from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any

from facturador.models.document import DocumentState, TaxDocument
from facturador.models.emitter import Emitter
from facturador.models.void_event import VoidEvent, VoidReason, VoidRequest, VoidState
from facturador.services.context import Services
from facturador.services.document_builder import sv_now
from facturador.services.exceptions import (
    ConflictError,
    NotFoundError,
    SigningError,
    TransmissionError,
    ValidationError,
)
from facturador.services.issuance import find_by_generation_code, find_document
from facturador.services.void_builder import VOID_VERSION, build_void_event
from facturador.utils.validators import validate_generation_code

logger = logging.getLogger(__name__)


@dataclass
class VoidResult:
    success: bool
    id: int | None
    generation_code: str | None
    state: VoidState
    seal: str | None = None
    error: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def status_code(self) -> int:
        return 201 if self.success else 200

    @classmethod
    def from_event(cls, event: VoidEvent, error: str | None = None) -> VoidResult:
        return cls(
            success=event.state is VoidState.PROCESADO,
            id=event.id,
            generation_code=event.generation_code,
            state=event.state,
            seal=event.seal,
            error=error,
            errors=list(event.observations),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "id": self.id,
            "generation_code": self.generation_code,
            "state": self.state.value,
            "seal": self.seal,
            "error": self.error,
            "errors": self.errors,
        }


def _reference_date(doc: TaxDocument) -> date | None:
    """Acceptance date, or the emission date when MH's timestamp is missing."""
    value = doc.processed_at or doc.emission_date
    if not value:
        return None
    return date.fromisoformat(value[:10])


def days_since_acceptance(doc: TaxDocument, today: date) -> int:
    ref = _reference_date(doc)
    if ref is None:
        return 0
    return (today - ref).days


def list_voids(services: Services, document_id: int | None = None) -> list[VoidEvent]:
    return services.voids.filter(lambda v: document_id is None or v.document_id == document_id)


def _check_preconditions(
    doc: TaxDocument,
    request: VoidRequest,
    services: Services,
    today: date,
) -> str | None:
    """Raise for any condition that forbids voiding; return the normalized replacement code."""
    if doc.state is DocumentState.INVALIDADO:
        raise ConflictError("El documento ya fue anulado")
    if doc.state is not DocumentState.PROCESADO or not doc.seal:
        raise ValidationError("Solo se pueden anular documentos procesados por MH con sello")
    processed = services.voids.find(
        lambda v: v.document_id == doc.id and v.state is VoidState.PROCESADO
    )
    if processed is not None:
        raise ConflictError("El documento ya tiene un evento de invalidación procesado")

    window = doc.doc_type.void_window_days
    elapsed = days_since_acceptance(doc, today)
    if elapsed > window:
        raise ValidationError(
            f"El plazo para anular este documento ha expirado. Plazo máximo: {window} días. "
            f"Días transcurridos: {elapsed}"
        )

    replacement = None
    if request.reason is VoidReason.ERROR_EN_DATOS:
        if not request.replacement_code:
            raise ValidationError(
                "La anulación por error en la información requiere el documento de reemplazo"
            )
        try:
            replacement = validate_generation_code(request.replacement_code)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None
        target = find_by_generation_code(services, replacement)
        if target is None:
            raise ValidationError(f"El documento de reemplazo {replacement} no existe")
        if target.state is not DocumentState.PROCESADO:
            raise ValidationError(
                f"El documento de reemplazo debe estar PROCESADO (actual: {target.state.value})"
            )
    elif request.reason is VoidReason.OTRO and not (request.justification or "").strip():
        raise ValidationError("La anulación por otro motivo requiere una justificación")
    return replacement


def void_document(
    document_id: int,
    request: VoidRequest,
    services: Services,
    today: date | None = None,
    *,
    now: datetime | None = None,
) -> VoidResult:
    """Invalidate an accepted document.

    Preconditions raise before anything is persisted. On success the event is
    PROCESSED and the original becomes INVALIDADO; on rejection the original
    stays PROCESSED.
    """
    ts = sv_now(now)
    today = today or ts.date()
    doc = find_document(services, document_id)
    replacement = _check_preconditions(doc, request, services, today)
    if replacement is not None and replacement != request.replacement_code:
        request = replace(request, replacement_code=replacement)

    try:
        emitter = Emitter.from_dict(doc.emitter or services.load_emitter())
        branch = emitter.branch(doc.branch)
    except KeyError:
        raise NotFoundError(f"Sucursal no encontrada: {doc.branch}") from None

    payload, generation_code = build_void_event(
        emitter=emitter,
        branch=branch,
        original=doc,
        request=request,
        ambiente=services.ambiente,
        now=ts,
    )
    event = VoidEvent(
        document_id=doc.id or 0,
        generation_code=generation_code,
        reason=request.reason,
        justification=request.justification,
        responsible={
            "nombre": request.responsible_name,
            "tipo_documento": request.responsible_doc_type,
            "num_documento": request.responsible_doc_number,
        },
        requester={
            "nombre": request.requester_name,
            "tipo_documento": request.requester_doc_type,
            "num_documento": request.requester_doc_number,
        },
        replacement_code=request.replacement_code,
        original={
            "generation_code": doc.generation_code,
            "control_number": doc.control_number,
            "doc_type": doc.doc_type.value,
            "seal": doc.seal,
            "emission_date": doc.emission_date,
            "total_to_pay": f"{doc.totals.total_to_pay:.2f}",
            "tax": f"{doc.totals.tax:.2f}",
        },
        payload=payload,
        created_at=ts.isoformat(),
    )
    services.voids.add(event)
    logger.info("Void event %s created for document %s", event.id, doc.id)

    nit = emitter.nit_digits
    try:
        signed = services.sign(nit, payload)
    except SigningError as exc:
        event.last_error = exc.message
        services.voids.save(event)
        logger.warning("Signing failed for void event %s: %s", event.id, exc.message)
        return VoidResult.from_event(event, error=exc.message)

    event.signed = signed
    event.state = VoidState.FIRMADO
    services.voids.save(event)

    try:
        result = services.transmit_void(
            signed, ambiente=services.ambiente, nit=nit, version=VOID_VERSION
        )
    except TransmissionError as exc:
        event.state = VoidState.RECHAZADO
        event.last_error = exc.message
        services.voids.save(event)
        logger.warning("Void transmission failed for event %s: %s", event.id, exc.message)
        return VoidResult.from_event(event, error=exc.message)

    event.seal = result.seal
    event.processed_at = result.processed_at
    event.message_code = result.message_code
    event.message_description = result.message_description
    event.observations = list(result.observations)
    if not result.success:
        event.state = VoidState.RECHAZADO
        event.last_error = result.error
        services.voids.save(event)
        return VoidResult.from_event(event, error=result.error)

    event.state = VoidState.PROCESADO
    services.voids.save(event)
    doc.state = DocumentState.INVALIDADO
    doc.voided_at = result.processed_at or ts.isoformat()
    services.documents.save(doc)
    logger.info("Document %s voided (event %s)", doc.id, event.id)
    return VoidResult.from_event(event)
