from __future__ import annotations

from concurrent.futures import Future
from unittest.mock import MagicMock, patch

import pytest
import requests

from facturador.models.document import DocumentState, DocumentType, TaxDocument
from facturador.services import notifier


@pytest.fixture
def document() -> TaxDocument:
    return TaxDocument(
        generation_code="0A1B2C3D-4E5F-4A6B-8C7D-9E0F1A2B3C4D",
        control_number="DTE-01-M001P001-000000000000001",
        doc_type=DocumentType.FACTURA,
        env="pruebas",
        branch="CM",
        state=DocumentState.PROCESADO,
        client="maria",
        seal="2025SEAL",
        signed="jws",
        payload={"identificacion": {}},
    )


class TestSendNotification:
    def test_no_url_skips(self, monkeypatch, document):
        monkeypatch.delenv("FACTURADOR_NOTIFY_URL", raising=False)
        with patch("facturador.services.notifier.requests.post") as mock_post:
            assert notifier.send_notification(document) is False
        mock_post.assert_not_called()

    @patch("facturador.services.notifier.requests.post")
    def test_posts_document(self, mock_post, monkeypatch, document):
        monkeypatch.setenv("FACTURADOR_NOTIFY_URL", "https://hooks.example.com/dte")
        mock_post.return_value = MagicMock(status_code=200)
        assert notifier.send_notification(document) is True
        assert mock_post.call_args.args[0] == "https://hooks.example.com/dte"
        body = mock_post.call_args.kwargs["json"]
        assert body["codigoGeneracion"] == document.generation_code
        assert body["selloRecibido"] == "2025SEAL"
        assert body["cliente"] == "maria"
        assert body["firmado"] == "jws"

    @patch("facturador.services.notifier.requests.post")
    def test_http_error_raises(self, mock_post, monkeypatch, document):
        monkeypatch.setenv("FACTURADOR_NOTIFY_URL", "https://hooks.example.com/dte")
        mock_post.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("500")
        with pytest.raises(requests.exceptions.HTTPError):
            notifier.send_notification(document)


class TestDispatch:
    def test_returns_future(self, document):
        with patch.object(notifier, "send_notification", return_value=True) as mock_send:
            future = notifier.dispatch(document)
            assert future.result(timeout=5) is True
        mock_send.assert_called_once_with(document)

    def test_failure_stays_in_future(self, document):
        with patch.object(notifier, "send_notification", side_effect=RuntimeError("hook down")):
            future = notifier.dispatch(document)
            assert isinstance(future.exception(timeout=5), RuntimeError)

    def test_failure_is_logged(self, caplog):
        future = Future()
        future.set_exception(RuntimeError("hook down"))
        notifier._log_failure(future)
        assert "Notification failed" in caplog.text
