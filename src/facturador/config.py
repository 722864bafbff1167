from __future__ import annotations

import os
from datetime import timedelta, timezone
from decimal import Decimal
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "facturador-dte"
KEYRING_SERVICE = "facturador-dte"
KEYRING_MH_PASSWORD = "mh-password"
KEYRING_FIRMADOR_PASSWORD = "firmador-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (shell env var, dev
    layout, an existing platformdirs directory).
    """
    from_env = os.environ.get("FACTURADOR_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/facturador/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")


# El Salvador does not observe DST
SV_TZ = timezone(timedelta(hours=-6))

AMBIENTE = {"pruebas": "00", "produccion": "01"}

MH_URLS = {
    "pruebas": "https://apitest.dtes.mh.gob.sv",
    "produccion": "https://api.dtes.mh.gob.sv",
}

# Token lifetime granted by MH, in hours
MH_TOKEN_HOURS = {"pruebas": 48, "produccion": 24}
MH_TOKEN_REFRESH_MARGIN = timedelta(minutes=30)

MH_TIMEOUT = 8
MH_AUTH_TIMEOUT = 30
FIRMADOR_TIMEOUT = 30
NOTIFY_TIMEOUT = 15

DEFAULT_FIRMADOR_URL = "http://localhost:8113"

IVA_RATE = Decimal("0.13")
IVA_CODE = "20"
IVA_DESCRIPTION = "Impuesto al Valor Agregado 13%"

# Days after acceptance during which a document may still be voided
VOID_WINDOW_DAYS = {
    "01": 90,
    "03": 1,
    "05": 1,
    "06": 1,
    "07": 1,
    "11": 90,
    "14": 90,
}


def env_from_ambiente(ambiente: str) -> str:
    """Map an MH ambiente code ("00"/"01") back to the env name."""
    for env, code in AMBIENTE.items():
        if code == ambiente:
            return env
    raise KeyError(ambiente)


# --- Keyring helpers ---


def _get_keyring_password(username: str) -> str | None:
    """Try to read a secret from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, username)
    except Exception:
        return None


def _set_keyring_password(username: str, password: str) -> bool:
    """Store a secret in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, username, password)
        return True
    except Exception:
        return False


def _delete_keyring_password(username: str) -> bool:
    """Remove a secret from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, username)
        return True
    except Exception:
        return False


def _get_secret(env_var: str, keyring_username: str) -> str:
    value = os.environ.get(env_var)
    if value is not None:
        return value
    value = _get_keyring_password(keyring_username)
    if value is not None:
        return value
    raise KeyError(env_var)


# --- Service credentials ---


def get_mh_password() -> str:
    """Return the MH API password.

    Priority: 1) MH_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has it.
    """
    return _get_secret("MH_PASSWORD", KEYRING_MH_PASSWORD)


def get_firmador_password() -> str:
    """Return the private-key password the signing service expects."""
    return _get_secret("FIRMADOR_PASSWORD", KEYRING_FIRMADOR_PASSWORD)


def get_firmador_url() -> str:
    return os.environ.get("FIRMADOR_URL", DEFAULT_FIRMADOR_URL).rstrip("/")


def get_notify_url() -> str | None:
    return os.environ.get("FACTURADOR_NOTIFY_URL") or None


def get_default_env() -> str:
    env = os.environ.get("FACTURADOR_ENV", "pruebas")
    if env not in AMBIENTE:
        raise ValueError(f"Ambiente desconocido: {env!r}")
    return env


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def load_emitter() -> dict:
    """Load emitter configuration from config/emitter.yaml."""
    return load_yaml(get_config_dir() / "emitter.yaml")


def load_client(name: str) -> dict:
    """Load a client configuration from config/clients/{name}.yaml."""
    return load_yaml(get_config_dir() / "clients" / f"{name}.yaml")


def list_clients() -> list[str]:
    """Return sorted list of client names (YAML file stems) from config/clients/."""
    clients_dir = get_config_dir() / "clients"
    if not clients_dir.exists():
        return []
    return sorted(f.stem for f in clients_dir.glob("*.yaml"))


def get_env_dir(env: str) -> Path:
    """Return the data directory holding the stores for the given environment."""
    return get_data_dir() / env


def get_issued_dir(env: str) -> Path:
    """Return the directory where accepted documents are saved as JSON."""
    return get_env_dir(env) / "issued"
