"""Shared Select option constants for DTE form fields.

Labels use "code — description" format; values are the MH catalog codes.
"""

from __future__ import annotations

from facturador.models.document import TaxTreatment
from facturador.models.void_event import VoidReason

DOC_TYPE_OPTIONS: tuple[tuple[str, str], ...] = (
    ("Automático (según receptor)", "auto"),
    ("01 — Factura", "01"),
    ("03 — Comprobante de Crédito Fiscal", "03"),
    ("14 — Factura de Sujeto Excluido", "14"),
)

CONDITION_OPTIONS: tuple[tuple[str, int], ...] = (
    ("1 — Contado", 1),
    ("2 — A crédito", 2),
    ("3 — Otro", 3),
)

TREATMENT_OPTIONS: tuple[tuple[str, str], ...] = (
    ("Gravado", TaxTreatment.GRAVADO.value),
    ("Exento", TaxTreatment.EXENTO.value),
    ("No sujeto", TaxTreatment.NO_SUJETO.value),
    ("No gravado", TaxTreatment.NO_GRAVADO.value),
)

# CAT-022 identity documents
IDENTITY_DOC_OPTIONS: tuple[tuple[str, str], ...] = (
    ("13 — DUI", "13"),
    ("36 — NIT", "36"),
    ("02 — Carné de residente", "02"),
    ("03 — Pasaporte", "03"),
    ("37 — Otro", "37"),
)

VOID_REASON_OPTIONS: tuple[tuple[str, int], ...] = tuple(
    (f"{r.value} — {r.label}", r.value) for r in VoidReason
)
