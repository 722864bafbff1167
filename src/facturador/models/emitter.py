from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Branch:
    """Sucursal: an establishment/point of sale registered with MH."""

    code: str
    nombre: str
    cod_estable_mh: str | None = None
    cod_estable: str | None = None
    cod_punto_venta_mh: str | None = None
    cod_punto_venta: str | None = None
    tipo_establecimiento: str = "01"  # 01 = casa matriz
    departamento: str | None = None
    municipio: str | None = None
    complemento: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Branch:
        return cls(
            code=str(d["codigo"]),
            nombre=d.get("nombre", str(d["codigo"])),
            cod_estable_mh=d.get("cod_estable_mh"),
            cod_estable=d.get("cod_estable"),
            cod_punto_venta_mh=d.get("cod_punto_venta_mh"),
            cod_punto_venta=d.get("cod_punto_venta"),
            tipo_establecimiento=str(d.get("tipo_establecimiento", "01")).zfill(2),
            departamento=_opt_str(d.get("departamento")),
            municipio=_opt_str(d.get("municipio")),
            complemento=d.get("complemento"),
        )

    @property
    def establishment_prefix(self) -> str:
        """The 8-character middle block of a control number."""
        est = (self.cod_estable_mh or "M001")[:4]
        pos = (self.cod_punto_venta_mh or "P001")[:4]
        return f"{est}{pos}"


@dataclass(frozen=True)
class Emitter:
    """Emisor: the company issuing the DTE."""

    nit: str
    nrc: str
    nombre: str
    cod_actividad: str
    desc_actividad: str
    telefono: str
    correo: str
    departamento: str
    municipio: str
    complemento: str
    nombre_comercial: str | None = None
    branches: tuple[Branch, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, d: dict) -> Emitter:
        """Create an Emitter from a YAML-loaded dict, applying defaults for optional fields."""
        direccion = d.get("direccion", {})
        return cls(
            nit=str(d["nit"]),
            nrc=str(d["nrc"]),
            nombre=d["nombre"],
            cod_actividad=str(d.get("cod_actividad", "62010")),
            desc_actividad=d.get("desc_actividad", "Actividades de programación informática"),
            telefono=str(d.get("telefono", "")),
            correo=d.get("correo", ""),
            departamento=str(direccion.get("departamento", "06")).zfill(2),
            municipio=str(direccion.get("municipio", "14")).zfill(2),
            complemento=direccion.get("complemento", ""),
            nombre_comercial=d.get("nombre_comercial"),
            branches=tuple(Branch.from_dict(b) for b in d.get("sucursales", [])),
        )

    @property
    def nit_digits(self) -> str:
        return self.nit.replace("-", "")

    def branch(self, code: str | None = None) -> Branch:
        """Return the branch with *code*, or the first one when *code* is None.

        Raises KeyError when no branch matches.
        """
        if not self.branches:
            raise KeyError(code or "sucursal")
        if code is None:
            return self.branches[0]
        for b in self.branches:
            if b.code == code:
                return b
        raise KeyError(code)


def _opt_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value).zfill(2)
