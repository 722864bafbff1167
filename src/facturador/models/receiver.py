from __future__ import annotations

from dataclasses import asdict, dataclass

# tipoDocumento codes accepted for an excluded subject
FSE_DOC_TYPES = {"1": "13", "13": "13", "36": "36", "02": "02", "37": "37", "03": "03"}

DOC_TYPE_NIT = "36"
DOC_TYPE_DUI = "13"


@dataclass(frozen=True)
class Receiver:
    """Receptor: the billed party. Every field is optional for a consumer invoice."""

    nombre: str | None = None
    tipo_documento: str | None = None
    num_documento: str | None = None
    nit: str | None = None
    nrc: str | None = None
    cod_actividad: str | None = None
    desc_actividad: str | None = None
    nombre_comercial: str | None = None
    telefono: str | None = None
    correo: str | None = None
    departamento: str | None = None
    municipio: str | None = None
    complemento: str | None = None

    @classmethod
    def from_dict(cls, d: dict | None) -> Receiver:
        if not d:
            return cls()
        direccion = d.get("direccion") or {}
        return cls(
            nombre=d.get("nombre"),
            tipo_documento=_clean(d.get("tipo_documento")),
            num_documento=_clean(d.get("num_documento")),
            nit=_sanitize_id(d.get("nit")),
            nrc=_sanitize_id(d.get("nrc")),
            cod_actividad=_clean(d.get("cod_actividad")),
            desc_actividad=d.get("desc_actividad"),
            nombre_comercial=d.get("nombre_comercial"),
            telefono=_clean(d.get("telefono")),
            correo=d.get("correo"),
            departamento=_clean(direccion.get("departamento", d.get("departamento"))),
            municipio=_clean(direccion.get("municipio", d.get("municipio"))),
            complemento=direccion.get("complemento", d.get("complemento")),
        )

    @classmethod
    def from_payload(cls, receptor: dict) -> Receiver:
        """Rebuild a receiver from the ``receptor`` block of a stored DTE payload."""
        direccion = receptor.get("direccion") or {}
        return cls(
            nombre=receptor.get("nombre"),
            tipo_documento=receptor.get("tipoDocumento"),
            num_documento=receptor.get("numDocumento"),
            nit=_sanitize_id(receptor.get("nit")),
            nrc=_sanitize_id(receptor.get("nrc")),
            cod_actividad=receptor.get("codActividad"),
            desc_actividad=receptor.get("descActividad"),
            nombre_comercial=receptor.get("nombreComercial"),
            telefono=receptor.get("telefono") or None,
            correo=receptor.get("correo") or None,
            departamento=direccion.get("departamento"),
            municipio=direccion.get("municipio"),
            complemento=direccion.get("complemento"),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def is_empty(self) -> bool:
        return not self.nombre and not self.num_documento

    @property
    def has_fiscal_credit_ids(self) -> bool:
        return bool(self.nit and self.nrc)

    @property
    def identity_document(self) -> tuple[str, str] | None:
        """(tipoDocumento, numero) preferring an explicit document, then the NIT."""
        if self.num_documento:
            return self.tipo_documento or DOC_TYPE_DUI, self.num_documento
        if self.nit:
            return DOC_TYPE_NIT, self.nit
        return None


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _sanitize_id(value: object) -> str | None:
    """Strip dashes and blanks from NIT/NRC values copied out of a payload."""
    text = _clean(value)
    if text is None:
        return None
    return text.replace("-", "").replace(" ", "") or None
