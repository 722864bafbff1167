"""Best-effort delivery notification for accepted documents.

Runs off the request path in a small thread pool; failures are logged and
never reach the caller.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor

import requests

from facturador.config import NOTIFY_TIMEOUT, get_notify_url
from facturador.models.document import TaxDocument

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")


def send_notification(document: TaxDocument) -> bool:
    """POST the accepted document to FACTURADOR_NOTIFY_URL.

    Returns False (and only logs) when no URL is configured.
    """
    url = get_notify_url()
    if not url:
        logger.info(
            "No notify URL configured; skipping notification for %s",
            document.generation_code,
        )
        return False
    body = {
        "codigoGeneracion": document.generation_code,
        "numeroControl": document.control_number,
        "tipoDte": document.doc_type.value,
        "cliente": document.client,
        "receptor": document.receiver,
        "selloRecibido": document.seal,
        "documento": document.payload,
        "firmado": document.signed,
    }
    resp = requests.post(url, json=body, timeout=NOTIFY_TIMEOUT)
    resp.raise_for_status()
    logger.info("Notification sent for %s", document.generation_code)
    return True


def _log_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("Notification failed", exc_info=exc)


def dispatch(document: TaxDocument) -> Future:
    """Queue a notification for *document* and return immediately."""
    future = _executor.submit(send_notification, document)
    future.add_done_callback(_log_failure)
    return future
