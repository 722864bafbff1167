"""Late-payment surcharge (mora) calculation.

Configuration precedence: the client's own ``mora`` section when active,
then the emitter's ``mora_default`` when active, otherwise no surcharge.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from facturador import config as _config
from facturador.models.document import DocumentState, DocumentType, LineItem, TaxDocument, TaxTreatment
from facturador.models.late_fee import (
    AffectedInvoice,
    CalculationMode,
    Frequency,
    LateFeeConfig,
    LateFeeResult,
    OverdueInvoice,
)
from facturador.services.exceptions import NotFoundError
from facturador.utils.formatters import round2

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
_HUNDRED = Decimal("100")

# Documents that represent an amount owed by the client
_BILLABLE = (DocumentType.FACTURA, DocumentType.CREDITO_FISCAL)


def resolve_config(
    client_slug: str | None,
    *,
    load_client: Callable[[str], dict[str, Any]] | None = None,
    load_emitter: Callable[[], dict[str, Any]] | None = None,
) -> LateFeeConfig | None:
    load_client = load_client or _config.load_client
    load_emitter = load_emitter or _config.load_emitter

    if client_slug:
        try:
            client = load_client(client_slug)
        except FileNotFoundError:
            raise NotFoundError(f"Cliente no encontrado: {client_slug}") from None
        section = client.get("mora")
        if section:
            cfg = LateFeeConfig.from_dict(section)
            if cfg.active:
                logger.debug("Using client late-fee config %s", cfg.code)
                return cfg

    try:
        emitter = load_emitter()
    except FileNotFoundError:
        emitter = {}
    section = emitter.get("mora_default")
    if section:
        cfg = LateFeeConfig.from_dict(section)
        if cfg.active:
            logger.debug("Using default late-fee config %s", cfg.code)
            return cfg

    logger.debug("No active late-fee config")
    return None


def _emission_date(doc: TaxDocument) -> date | None:
    value = doc.emission_date
    if not value:
        return None
    return datetime.strptime(value[:10], "%Y-%m-%d").date()


def overdue_invoices(
    client_slug: str,
    config: LateFeeConfig,
    documents: Iterable[TaxDocument],
    today: date,
) -> list[OverdueInvoice]:
    """PROCESSED invoices of the client emitted before ``today - grace_days``."""
    limit = today - timedelta(days=config.grace_days)
    overdue: list[OverdueInvoice] = []
    for doc in documents:
        if doc.client != client_slug or doc.state is not DocumentState.PROCESADO:
            continue
        if doc.doc_type not in _BILLABLE:
            continue
        emitted = _emission_date(doc)
        if emitted is None or emitted >= limit:
            continue
        overdue.append(
            OverdueInvoice(
                document_id=doc.id,
                generation_code=doc.generation_code,
                total=doc.totals.total_to_pay,
                emission_date=emitted,
                due_date=emitted + timedelta(days=config.grace_days),
                accumulated_fee=Decimal(str(doc.terms.get("mora_acumulada", "0"))),
            )
        )
    return overdue


def _periods(frequency: Frequency, days_late: int) -> int:
    if frequency is Frequency.DIARIA:
        return days_late
    if frequency is Frequency.SEMANAL:
        return math.ceil(days_late / 7)
    if frequency is Frequency.MENSUAL:
        return math.ceil(days_late / 30)
    return 1


def invoice_fee(config: LateFeeConfig, invoice: OverdueInvoice, today: date) -> tuple[Decimal, int]:
    """Return (fee, days_late) for one overdue invoice, caps applied, unrounded."""
    days_late = max(0, (today - invoice.due_date).days)
    original = invoice.total
    base = original + invoice.accumulated_fee if config.cumulative else original

    if config.mode is CalculationMode.MONTO_FIJO:
        per_period = config.value
    elif config.mode is CalculationMode.PORCENTAJE_SALDO:
        per_period = base * config.value / _HUNDRED
    else:
        per_period = original * config.value / _HUNDRED
    fee = per_period * _periods(config.frequency, days_late)

    if config.max_amount is not None:
        fee = min(fee, config.max_amount)
    if config.max_percent is not None:
        fee = min(fee, original * config.max_percent / _HUNDRED)
    return fee, days_late


def compute_late_fee(
    client_slug: str,
    documents: Iterable[TaxDocument],
    today: date | None = None,
    *,
    config: LateFeeConfig | None = None,
    load_client: Callable[[str], dict[str, Any]] | None = None,
    load_emitter: Callable[[], dict[str, Any]] | None = None,
) -> LateFeeResult:
    """Total surcharge owed by *client_slug* across its overdue invoices."""
    if today is None:
        today = datetime.now(_config.SV_TZ).date()
    if config is None:
        config = resolve_config(client_slug, load_client=load_client, load_emitter=load_emitter)
    if config is None:
        return LateFeeResult(applies=False)

    overdue = overdue_invoices(client_slug, config, documents, today)
    if not overdue:
        return LateFeeResult(applies=False, config=config)

    total = ZERO
    max_days = 0
    affected: list[AffectedInvoice] = []
    for inv in overdue:
        fee, days_late = invoice_fee(config, inv, today)
        max_days = max(max_days, days_late)
        affected.append(
            AffectedInvoice(
                document_id=inv.document_id,
                original_amount=inv.total,
                fee=round2(fee),
                days_late=days_late,
            )
        )
        total += fee

    total = round2(total)
    logger.info(
        "Late fee for %s: %s (%d invoices, %d days)",
        client_slug, total, len(affected), max_days,
    )
    return LateFeeResult(
        applies=total > 0,
        amount=total,
        days_late=max_days,
        invoices=affected,
        config=config,
    )


def late_fee_line(result: LateFeeResult) -> LineItem:
    """Exempt service line that adds the surcharge to an invoice."""
    return LineItem(
        description=f"Mora por pago tardío ({result.days_late} días)",
        quantity=Decimal("1"),
        unit_price=result.amount,
        treatment=TaxTreatment.EXENTO,
        item_type=2,
        unit=99,
    )
