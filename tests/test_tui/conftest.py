from __future__ import annotations

from datetime import datetime
from unittest.mock import patch

import pytest

from facturador.config import SV_TZ
from facturador.services.issuance import IssueRequest, issue_invoice
from facturador.tui.app import FacturadorApp

ISSUED = datetime(2025, 3, 10, 9, 30, 0, tzinfo=SV_TZ)


@pytest.fixture
def mock_config():
    """Patch config and network calls so the TUI can launch without real files."""
    with (
        patch("facturador.services.signer_client.check_signer_connectivity"),
        patch("facturador.services.mh_client.check_mh_connectivity"),
        patch("facturador.config.list_clients", return_value=["la-ceiba", "maria"]),
        patch("facturador.config.get_mh_password", return_value="mh-pass"),
        patch("facturador.config.get_firmador_password", return_value="key-pass"),
        patch("facturador.utils.registry.check_store_health", return_value=[]),
    ):
        yield


@pytest.fixture
def make_app(mock_config, services):
    """Build an app wired to the fixture services for whichever env it runs in."""

    def factory(env: str = "pruebas") -> FacturadorApp:
        return FacturadorApp(env=env, services_factory=lambda _env: services)

    return factory


@pytest.fixture
def issued(services, service_item, taxed_item):
    """Two processed documents: a consumer invoice (id 1) and a CCF (id 2)."""
    first = issue_invoice(IssueRequest(items=[service_item]), services, now=ISSUED)
    second = issue_invoice(IssueRequest(items=[taxed_item], client="la-ceiba"), services, now=ISSUED)
    return first, second


async def settle(pilot) -> None:
    """Let threaded workers finish and the screen repaint."""
    await pilot.app.workers.wait_for_complete()
    await pilot.pause()


def log_text(log) -> str:
    return "\n".join(str(line) for line in log.lines)
