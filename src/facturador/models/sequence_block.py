from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class SequenceBlock:
    """A range of control numbers authorised for one branch and document type.

    ``current`` is the last number consumed; the next control number uses
    ``current + 1``.
    """

    branch: str
    doc_type: str
    lower: int
    upper: int
    current: int
    serie: str = ""
    active: bool = True
    id: int | None = None

    def __post_init__(self) -> None:
        if not (self.lower <= self.current <= self.upper):
            raise ValueError(
                f"Bloque inválido: se requiere {self.lower} <= {self.current} <= {self.upper}"
            )

    @property
    def exhausted(self) -> bool:
        return self.current >= self.upper

    @property
    def remaining(self) -> int:
        return max(0, self.upper - self.current)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SequenceBlock:
        return cls(
            id=d.get("id"),
            branch=str(d["branch"]),
            doc_type=str(d["doc_type"]),
            serie=d.get("serie", ""),
            lower=int(d["lower"]),
            upper=int(d["upper"]),
            current=int(d["current"]),
            active=bool(d.get("active", True)),
        )
