"""Client for the local signing service (firmador).

The service holds the taxpayer's certificate and returns the document as a
compact JWS. Any failure is reported as SigningError; the caller leaves the
document unsigned.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from facturador.config import FIRMADOR_TIMEOUT, get_firmador_password, get_firmador_url
from facturador.services.exceptions import SigningError

logger = logging.getLogger(__name__)


def sign_document(nit: str, document: dict[str, Any], *, password: str | None = None) -> str:
    """Sign *document* (DTE or void event) and return the JWS string."""
    url = f"{get_firmador_url()}/firmardocumento/"
    if password is None:
        try:
            password = get_firmador_password()
        except KeyError:
            raise SigningError(
                "Contraseña del firmador no configurada (FIRMADOR_PASSWORD o keyring)"
            ) from None
    payload = {
        "nit": nit.replace("-", ""),
        "activo": True,
        "passwordPri": password,
        "dteJson": document,
    }

    logger.info("Signing document for NIT %s", payload["nit"])
    try:
        resp = requests.post(url, json=payload, timeout=FIRMADOR_TIMEOUT)
    except requests.exceptions.Timeout:
        raise SigningError("Timeout al conectar con el servicio de firma") from None
    except requests.exceptions.ConnectionError:
        raise SigningError(
            f"No se puede conectar al servicio de firma en {get_firmador_url()}. "
            "Verifique que el firmador esté ejecutándose."
        ) from None
    except requests.exceptions.RequestException as exc:
        raise SigningError(f"Error de conexión con el servicio de firma: {exc}") from exc

    if not resp.ok:
        body = resp.text[:500] if resp.text else ""
        raise SigningError(f"Error HTTP {resp.status_code} del firmador: {body}")

    try:
        data = resp.json()
    except ValueError:
        raise SigningError("Respuesta del firmador no es JSON") from None
    if not isinstance(data, dict):
        raise SigningError("Respuesta del firmador inválida")

    if data.get("status") != "OK" or not data.get("body"):
        body = data.get("body")
        reason = body.get("mensaje", body) if isinstance(body, dict) else body
        logger.warning("Signer refused document: %s", reason)
        raise SigningError(f"Error del firmador: {reason or 'desconocido'}", response=data)

    return str(data["body"])


def check_signer_connectivity() -> None:
    """GET the signer base URL. Any HTTP answer proves it is running.

    Raises on connection or timeout errors.
    """
    requests.get(get_firmador_url(), timeout=5)
