from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from facturador.config import VOID_WINDOW_DAYS

ZERO = Decimal("0")


class DocumentType(str, Enum):
    FACTURA = "01"
    CREDITO_FISCAL = "03"
    NOTA_CREDITO = "05"
    NOTA_DEBITO = "06"
    COMPROBANTE_RETENCION = "07"
    EXPORTACION = "11"
    SUJETO_EXCLUIDO = "14"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def version(self) -> int:
        """Schema version sent to MH. Raises KeyError for types this project does not build."""
        return _VERSIONS[self]

    @property
    def is_buildable(self) -> bool:
        return self in _VERSIONS

    @property
    def tax_inclusive(self) -> bool:
        """Unit prices include IVA (consumer and excluded-subject invoices)."""
        return self in (DocumentType.FACTURA, DocumentType.SUJETO_EXCLUIDO)

    @property
    def void_window_days(self) -> int:
        return VOID_WINDOW_DAYS.get(self.value, 1)


_LABELS = {
    DocumentType.FACTURA: "Factura",
    DocumentType.CREDITO_FISCAL: "Comprobante de Crédito Fiscal",
    DocumentType.NOTA_CREDITO: "Nota de Crédito",
    DocumentType.NOTA_DEBITO: "Nota de Débito",
    DocumentType.COMPROBANTE_RETENCION: "Comprobante de Retención",
    DocumentType.EXPORTACION: "Factura de Exportación",
    DocumentType.SUJETO_EXCLUIDO: "Factura de Sujeto Excluido",
}

_VERSIONS = {
    DocumentType.FACTURA: 1,
    DocumentType.CREDITO_FISCAL: 3,
    DocumentType.NOTA_CREDITO: 3,
    DocumentType.SUJETO_EXCLUIDO: 1,
}


class DocumentState(str, Enum):
    BORRADOR = "BORRADOR"
    FIRMADO = "FIRMADO"
    PROCESADO = "PROCESADO"
    RECHAZADO = "RECHAZADO"
    INVALIDADO = "INVALIDADO"


class TaxTreatment(str, Enum):
    GRAVADO = "gravado"
    EXENTO = "exento"
    NO_SUJETO = "no_sujeto"
    NO_GRAVADO = "no_gravado"


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal = ZERO
    treatment: TaxTreatment = TaxTreatment.GRAVADO
    item_type: int = 2  # 1 bienes, 2 servicios, 3 ambos, 4 otros
    unit: int = 99
    code: str | None = None
    catalog_id: int | None = None
    source_line: int | None = None

    @classmethod
    def from_dict(cls, d: dict) -> LineItem:
        """Create a LineItem from a YAML/JSON dict. Amounts are parsed as Decimal."""
        from facturador.utils.validators import validate_amount, validate_quantity

        return cls(
            description=str(d["descripcion"]),
            quantity=validate_quantity(str(d.get("cantidad", "1"))),
            unit_price=validate_amount(str(d.get("precio_unitario", "0")), field_name="precio_unitario"),
            discount=validate_amount(str(d.get("descuento", "0")), field_name="descuento"),
            treatment=TaxTreatment(d.get("tratamiento", TaxTreatment.GRAVADO.value)),
            item_type=int(d.get("tipo_item", 2)),
            unit=int(d.get("uni_medida", 99)),
            code=d.get("codigo"),
            catalog_id=d.get("id_catalogo"),
            source_line=d.get("linea_original"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "descripcion": self.description,
            "cantidad": str(self.quantity),
            "precio_unitario": str(self.unit_price),
            "descuento": str(self.discount),
            "tratamiento": self.treatment.value,
            "tipo_item": self.item_type,
            "uni_medida": self.unit,
        }
        if self.code is not None:
            d["codigo"] = self.code
        if self.catalog_id is not None:
            d["id_catalogo"] = self.catalog_id
        if self.source_line is not None:
            d["linea_original"] = self.source_line
        return d


@dataclass(frozen=True)
class Totals:
    not_subject: Decimal = ZERO
    exempt: Decimal = ZERO
    taxed: Decimal = ZERO
    not_taxed: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    sales_subtotal: Decimal = ZERO
    total_to_pay: Decimal = ZERO
    total_in_words: str = ""

    _AMOUNTS = (
        "not_subject", "exempt", "taxed", "not_taxed", "discount", "tax",
        "sales_subtotal", "total_to_pay",
    )

    def to_dict(self) -> dict[str, str]:
        d = {name: f"{getattr(self, name):.2f}" for name in self._AMOUNTS}
        d["total_in_words"] = self.total_in_words
        return d

    @classmethod
    def from_dict(cls, d: dict | None) -> Totals:
        if not d:
            return cls()
        kwargs: dict[str, Any] = {name: Decimal(str(d.get(name, "0"))) for name in cls._AMOUNTS}
        return cls(**kwargs, total_in_words=d.get("total_in_words", ""))


@dataclass
class TaxDocument:
    """An issued (or in-flight) DTE as kept in the local document store."""

    generation_code: str
    control_number: str
    doc_type: DocumentType
    env: str
    branch: str
    state: DocumentState = DocumentState.BORRADOR
    id: int | None = None
    block_id: int | None = None
    client: str | None = None
    emitter: dict[str, Any] = field(default_factory=dict)
    receiver: dict[str, Any] = field(default_factory=dict)
    items: list[LineItem] = field(default_factory=list)
    totals: Totals = field(default_factory=Totals)
    terms: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] | None = None
    signed: str | None = None
    seal: str | None = None
    processed_at: str | None = None
    message_code: str | None = None
    message_description: str | None = None
    observations: list[str] = field(default_factory=list)
    attempts: int = 0
    last_error: str | None = None
    emitted_at: str | None = None
    related_code: str | None = None
    voided_at: str | None = None

    @property
    def emission_date(self) -> str | None:
        """fecEmi of the built payload (YYYY-MM-DD)."""
        if self.payload:
            return self.payload.get("identificacion", {}).get("fecEmi")
        if self.emitted_at:
            return self.emitted_at[:10]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "generation_code": self.generation_code,
            "control_number": self.control_number,
            "doc_type": self.doc_type.value,
            "env": self.env,
            "branch": self.branch,
            "state": self.state.value,
            "block_id": self.block_id,
            "client": self.client,
            "emitter": self.emitter,
            "receiver": self.receiver,
            "items": [i.to_dict() for i in self.items],
            "totals": self.totals.to_dict(),
            "terms": self.terms,
            "payload": self.payload,
            "signed": self.signed,
            "seal": self.seal,
            "processed_at": self.processed_at,
            "message_code": self.message_code,
            "message_description": self.message_description,
            "observations": list(self.observations),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "emitted_at": self.emitted_at,
            "related_code": self.related_code,
            "voided_at": self.voided_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TaxDocument:
        return cls(
            id=d.get("id"),
            generation_code=d["generation_code"],
            control_number=d["control_number"],
            doc_type=DocumentType(d["doc_type"]),
            env=d["env"],
            branch=d["branch"],
            state=DocumentState(d.get("state", DocumentState.BORRADOR.value)),
            block_id=d.get("block_id"),
            client=d.get("client"),
            emitter=d.get("emitter") or {},
            receiver=d.get("receiver") or {},
            items=[LineItem.from_dict(i) for i in d.get("items", [])],
            totals=Totals.from_dict(d.get("totals")),
            terms=d.get("terms") or {},
            payload=d.get("payload"),
            signed=d.get("signed"),
            seal=d.get("seal"),
            processed_at=d.get("processed_at"),
            message_code=d.get("message_code"),
            message_description=d.get("message_description"),
            observations=list(d.get("observations") or []),
            attempts=int(d.get("attempts", 0)),
            last_error=d.get("last_error"),
            emitted_at=d.get("emitted_at"),
            related_code=d.get("related_code"),
            voided_at=d.get("voided_at"),
        )
