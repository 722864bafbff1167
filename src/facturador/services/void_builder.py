from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from facturador.models.document import TaxDocument
from facturador.models.emitter import Branch, Emitter
from facturador.models.void_event import VoidReason, VoidRequest
from facturador.services.document_builder import sv_now

VOID_VERSION = 2


def new_generation_code() -> str:
    """codigoGeneracion: an upper-case UUID4."""
    return str(uuid.uuid4()).upper()


def _receiver_fields(original: TaxDocument) -> dict[str, Any]:
    """Receiver identity as it appears on the original payload."""
    payload = original.payload or {}
    receptor = payload.get("receptor") or payload.get("sujetoExcluido") or {}
    tipo = receptor.get("tipoDocumento")
    numero = receptor.get("numDocumento")
    if not numero and receptor.get("nit"):
        tipo, numero = "36", receptor["nit"]
    return {
        "tipoDocumento": tipo,
        "numDocumento": numero,
        "nombre": receptor.get("nombre"),
        "telefono": receptor.get("telefono") or None,
        "correo": receptor.get("correo") or None,
    }


def build_void_event(
    *,
    emitter: Emitter,
    branch: Branch,
    original: TaxDocument,
    request: VoidRequest,
    ambiente: str,
    now: datetime | None = None,
) -> tuple[dict[str, Any], str]:
    """Build the invalidation event for *original*.

    Returns ``(event, generation_code)`` where the generation code is freshly
    minted for the event itself.
    """
    generation_code = new_generation_code()
    ts = sv_now(now)

    event = {
        "identificacion": {
            "version": VOID_VERSION,
            "ambiente": ambiente,
            "codigoGeneracion": generation_code,
            "fecAnula": ts.strftime("%Y-%m-%d"),
            "horAnula": ts.strftime("%H:%M:%S"),
        },
        "emisor": {
            "nit": emitter.nit_digits,
            "nombre": emitter.nombre,
            "tipoEstablecimiento": branch.tipo_establecimiento,
            "nomEstablecimiento": emitter.nombre_comercial or branch.nombre,
            "codEstableMH": branch.cod_estable_mh,
            "codEstable": branch.cod_estable,
            "codPuntoVentaMH": branch.cod_punto_venta_mh,
            "codPuntoVenta": branch.cod_punto_venta,
            "telefono": emitter.telefono,
            "correo": emitter.correo,
        },
        "documento": {
            "tipoDte": original.doc_type.value,
            "codigoGeneracion": original.generation_code,
            "selloRecibido": original.seal,
            "numeroControl": original.control_number,
            "fecEmi": original.emission_date,
            "montoIva": float(original.totals.tax),
            # Replacement document only applies to reason 1
            "codigoGeneracionR": (
                request.replacement_code
                if request.reason is VoidReason.ERROR_EN_DATOS
                else None
            ),
            **_receiver_fields(original),
        },
        "motivo": {
            "tipoAnulacion": int(request.reason),
            "motivoAnulacion": request.justification,
            "nombreResponsable": request.responsible_name,
            "tipDocResponsable": request.responsible_doc_type,
            "numDocResponsable": request.responsible_doc_number,
            "nombreSolicita": request.requester_name,
            "tipDocSolicita": request.requester_doc_type,
            "numDocSolicita": request.requester_doc_number,
        },
    }
    return event, generation_code
