from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class VoidReason(IntEnum):
    ERROR_EN_DATOS = 1
    RESCINDIR_OPERACION = 2
    OTRO = 3

    @property
    def label(self) -> str:
        return {
            VoidReason.ERROR_EN_DATOS: "Error en la información del documento",
            VoidReason.RESCINDIR_OPERACION: "Rescindir de la operación realizada",
            VoidReason.OTRO: "Otro",
        }[self]


class VoidState(str, Enum):
    BORRADOR = "BORRADOR"
    FIRMADO = "FIRMADO"
    PROCESADO = "PROCESADO"
    RECHAZADO = "RECHAZADO"


@dataclass(frozen=True)
class VoidRequest:
    """What the operator asks for when voiding a document."""

    reason: VoidReason
    responsible_name: str
    responsible_doc_type: str
    responsible_doc_number: str
    requester_name: str
    requester_doc_type: str
    requester_doc_number: str
    justification: str | None = None
    replacement_code: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> VoidRequest:
        return cls(
            reason=VoidReason(int(d["tipo_anulacion"])),
            responsible_name=d["nombre_responsable"],
            responsible_doc_type=str(d.get("tip_doc_responsable", "13")),
            responsible_doc_number=str(d["num_doc_responsable"]),
            requester_name=d["nombre_solicita"],
            requester_doc_type=str(d.get("tip_doc_solicita", "13")),
            requester_doc_number=str(d["num_doc_solicita"]),
            justification=d.get("motivo") or None,
            replacement_code=(d.get("codigo_reemplazo") or None),
        )


@dataclass
class VoidEvent:
    """Invalidation event as kept in the void store."""

    document_id: int
    generation_code: str
    reason: VoidReason
    state: VoidState = VoidState.BORRADOR
    id: int | None = None
    justification: str | None = None
    responsible: dict[str, str] = field(default_factory=dict)
    requester: dict[str, str] = field(default_factory=dict)
    replacement_code: str | None = None
    original: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] | None = None
    signed: str | None = None
    seal: str | None = None
    processed_at: str | None = None
    message_code: str | None = None
    message_description: str | None = None
    observations: list[str] = field(default_factory=list)
    last_error: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "generation_code": self.generation_code,
            "reason": int(self.reason),
            "state": self.state.value,
            "justification": self.justification,
            "responsible": self.responsible,
            "requester": self.requester,
            "replacement_code": self.replacement_code,
            "original": self.original,
            "payload": self.payload,
            "signed": self.signed,
            "seal": self.seal,
            "processed_at": self.processed_at,
            "message_code": self.message_code,
            "message_description": self.message_description,
            "observations": list(self.observations),
            "last_error": self.last_error,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> VoidEvent:
        return cls(
            id=d.get("id"),
            document_id=int(d["document_id"]),
            generation_code=d["generation_code"],
            reason=VoidReason(int(d["reason"])),
            state=VoidState(d.get("state", VoidState.BORRADOR.value)),
            justification=d.get("justification"),
            responsible=d.get("responsible") or {},
            requester=d.get("requester") or {},
            replacement_code=d.get("replacement_code"),
            original=d.get("original") or {},
            payload=d.get("payload"),
            signed=d.get("signed"),
            seal=d.get("seal"),
            processed_at=d.get("processed_at"),
            message_code=d.get("message_code"),
            message_description=d.get("message_description"),
            observations=list(d.get("observations") or []),
            last_error=d.get("last_error"),
            created_at=d.get("created_at"),
        )
