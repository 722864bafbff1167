from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from facturador.config import MH_TIMEOUT, MH_URLS, SV_TZ, env_from_ambiente
from facturador.services.exceptions import TransmissionError
from facturador.services.http_retry import MH_READ, raise_for_retryable, retry_call
from facturador.services.mh_auth import TokenCache, default_cache

logger = logging.getLogger(__name__)

_USER_AGENT = "facturador-dte/1.0"


@dataclass
class TransmissionResult:
    """MH's verdict on a submitted document or void event."""

    success: bool
    state: str
    seal: str | None = None
    processed_at: str | None = None
    message_code: str | None = None
    message_description: str | None = None
    observations: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> str | None:
        if self.success:
            return None
        return self.message_description or "Documento rechazado por MH"


def parse_mh_timestamp(value: str | None) -> str | None:
    """Convert MH's ``DD/MM/YYYY HH:MM:SS`` into an ISO timestamp (El Salvador time)."""
    if not value:
        return None
    try:
        parsed = datetime.strptime(value, "%d/%m/%Y %H:%M:%S")
    except ValueError:
        logger.warning("Unparseable fhProcesamiento from MH: %r", value)
        return None
    return parsed.replace(tzinfo=SV_TZ).isoformat()


def _parse_answer(data: dict[str, Any]) -> TransmissionResult:
    estado = data.get("estado")
    observations = [str(o) for o in (data.get("observaciones") or [])]
    result = TransmissionResult(
        success=estado == "PROCESADO",
        state=estado or "RECHAZADO",
        seal=data.get("selloRecibido") or None,
        processed_at=parse_mh_timestamp(data.get("fhProcesamiento")),
        message_code=data.get("codigoMsg"),
        message_description=data.get("descripcionMsg"),
        observations=observations,
        raw=data,
    )
    if result.success:
        logger.info("MH accepted %s, seal %s", data.get("codigoGeneracion"), result.seal)
    else:
        logger.warning(
            "MH rejected %s: %s %s",
            data.get("codigoGeneracion"), result.message_code, result.message_description,
        )
    return result


def _json_or_none(resp: requests.Response) -> dict[str, Any] | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _post_once(
    path: str,
    body: dict[str, Any],
    *,
    ambiente: str,
    nit: str,
    tokens: TokenCache,
) -> TransmissionResult:
    """Submit to MH exactly once. Transport and HTTP failures raise TransmissionError."""
    url = f"{MH_URLS[env_from_ambiente(ambiente)]}{path}"
    token = tokens.get_token(ambiente, nit)
    headers = {"Authorization": token, "User-Agent": _USER_AGENT}
    try:
        resp = requests.post(url, json=body, headers=headers, timeout=MH_TIMEOUT)
    except requests.exceptions.Timeout:
        raise TransmissionError(
            "Timeout al comunicarse con MH. Verifique el estado del DTE antes de reenviar."
        ) from None
    except requests.exceptions.RequestException as exc:
        raise TransmissionError(f"Error de conexión con MH: {exc}") from exc

    if resp.status_code == 401:
        tokens.invalidate(ambiente, nit)
        raise TransmissionError("Token de MH inválido o expirado", response={"codigoMsg": "107"})

    data = _json_or_none(resp)
    # MH answers rejections with HTTP 400 and a regular verdict body
    if data is not None and data.get("estado"):
        return _parse_answer(data)
    body_text = resp.text[:500] if resp.text else ""
    raise TransmissionError(f"Error HTTP {resp.status_code} de MH: {body_text}", response=data)


def transmit_document(
    signed: str,
    *,
    ambiente: str,
    nit: str,
    doc_type: str,
    version: int,
    generation_code: str,
    send_id: int = 1,
    tokens: TokenCache = default_cache,
) -> TransmissionResult:
    """Send a signed DTE to ``/fesv/recepciondte``."""
    logger.info("Transmitting DTE %s (tipo %s, ambiente %s)", generation_code, doc_type, ambiente)
    body = {
        "ambiente": ambiente,
        "idEnvio": send_id,
        "version": version,
        "tipoDte": doc_type,
        "documento": signed,
        "codigoGeneracion": generation_code,
    }
    return _post_once("/fesv/recepciondte", body, ambiente=ambiente, nit=nit, tokens=tokens)


def transmit_void(
    signed: str,
    *,
    ambiente: str,
    nit: str,
    version: int = 2,
    send_id: int = 1,
    tokens: TokenCache = default_cache,
) -> TransmissionResult:
    """Send a signed invalidation event to ``/fesv/anulardte``."""
    logger.info("Transmitting void event (ambiente %s)", ambiente)
    body = {
        "ambiente": ambiente,
        "idEnvio": send_id,
        "version": version,
        "documento": signed,
    }
    return _post_once("/fesv/anulardte", body, ambiente=ambiente, nit=nit, tokens=tokens)


def query_document(
    *,
    ambiente: str,
    nit: str,
    doc_type: str,
    generation_code: str,
    tokens: TokenCache = default_cache,
) -> TransmissionResult:
    """Ask MH for the current status of a document. Retried per MH_READ."""
    url = f"{MH_URLS[env_from_ambiente(ambiente)]}/fesv/recepcion/consultadte/"
    body = {
        "nitEmisor": nit.replace("-", ""),
        "tdte": doc_type,
        "codigoGeneracion": generation_code,
    }

    def _do_post() -> requests.Response:
        headers = {"Authorization": tokens.get_token(ambiente, nit), "User-Agent": _USER_AGENT}
        resp = requests.post(url, json=body, headers=headers, timeout=MH_TIMEOUT)
        return raise_for_retryable(resp, MH_READ)

    try:
        resp = retry_call(_do_post, MH_READ)
    except requests.exceptions.RequestException as exc:
        raise TransmissionError(f"Error consultando MH: {exc}") from exc

    if resp.status_code == 401:
        tokens.invalidate(ambiente, nit)
        raise TransmissionError("Token de MH inválido o expirado")
    data = _json_or_none(resp)
    if data is None or not data.get("estado"):
        body_text = resp.text[:500] if resp.text else ""
        raise TransmissionError(f"Error HTTP {resp.status_code} de MH: {body_text}", response=data)
    return _parse_answer(data)


def check_mh_connectivity(env: str) -> None:
    """GET the MH base URL. Any HTTP answer proves it is reachable.

    Raises on connection or timeout errors after MH_READ retries.
    """
    url = MH_URLS[env]

    def _do_get() -> requests.Response:
        return raise_for_retryable(requests.get(url, timeout=MH_TIMEOUT), MH_READ)

    retry_call(_do_get, MH_READ)
