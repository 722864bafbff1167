from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import requests

from facturador.config import (
    MH_AUTH_TIMEOUT,
    MH_TOKEN_HOURS,
    MH_TOKEN_REFRESH_MARGIN,
    MH_URLS,
    env_from_ambiente,
    get_mh_password,
)
from facturador.services.exceptions import MHAuthError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at - MH_TOKEN_REFRESH_MARGIN


def authenticate(ambiente: str, nit: str, password: str) -> str:
    """POST the credentials to ``/seguridad/auth`` and return the bearer token."""
    url = f"{MH_URLS[env_from_ambiente(ambiente)]}/seguridad/auth"
    try:
        resp = requests.post(
            url,
            data={"user": nit.replace("-", ""), "pwd": password},
            timeout=MH_AUTH_TIMEOUT,
        )
    except requests.exceptions.RequestException as exc:
        raise MHAuthError(f"Error de conexión con MH: {exc}") from exc

    if resp.status_code == 401:
        raise MHAuthError("Credenciales inválidas para MH. Verifique NIT y MH_PASSWORD")
    if resp.status_code == 403:
        raise MHAuthError("Usuario bloqueado en MH. Contacte al Ministerio de Hacienda")
    if not resp.ok:
        body = resp.text[:500] if resp.text else ""
        raise MHAuthError(f"Error HTTP {resp.status_code} en autenticación MH: {body}")

    try:
        data = resp.json()
    except ValueError:
        raise MHAuthError(
            f"Respuesta de autenticación MH no es JSON (HTTP {resp.status_code})"
        ) from None
    if not isinstance(data, dict):
        raise MHAuthError("Respuesta de autenticación MH inválida")
    token = (data.get("body") or {}).get("token")
    if data.get("status") != "OK" or not token:
        raise MHAuthError(
            data.get("error") or "Error de autenticación con MH", response=data
        )
    logger.info("Authenticated with MH (ambiente %s)", ambiente)
    return token


class TokenCache:
    """MH bearer tokens cached per (ambiente, nit).

    Tokens are reused until 30 minutes before their expiry (48 h in the test
    environment, 24 h in production).
    """

    def __init__(
        self,
        password_func: Callable[[], str] = get_mh_password,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._password_func = password_func
        self._clock = clock
        self._tokens: dict[tuple[str, str], CachedToken] = {}
        self._lock = threading.Lock()

    def get_token(self, ambiente: str, nit: str) -> str:
        key = (ambiente, nit.replace("-", ""))
        with self._lock:
            cached = self._tokens.get(key)
            now = self._clock()
            if cached is not None and cached.is_fresh(now):
                return cached.token
            try:
                password = self._password_func()
            except KeyError:
                raise MHAuthError(
                    "Contraseña de MH no configurada (MH_PASSWORD o keyring)"
                ) from None
            token = authenticate(ambiente, key[1], password)
            hours = MH_TOKEN_HOURS[env_from_ambiente(ambiente)]
            self._tokens[key] = CachedToken(token=token, expires_at=now + timedelta(hours=hours))
            return token

    def invalidate(self, ambiente: str, nit: str) -> None:
        with self._lock:
            self._tokens.pop((ambiente, nit.replace("-", "")), None)
        logger.info("MH token invalidated (ambiente %s)", ambiente)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


# Used when the mh_client functions are called without a cache
default_cache = TokenCache()
