from __future__ import annotations

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, Select, Static

from facturador.models.document import TaxDocument
from facturador.models.void_event import VoidReason, VoidRequest
from facturador.tui.options import IDENTITY_DOC_OPTIONS, VOID_REASON_OPTIONS


class VoidScreen(ModalScreen):
    """Invalidation form for one accepted document."""

    BINDINGS = [
        Binding("escape", "go_back", "Volver"),
    ]

    def __init__(self, document: TaxDocument) -> None:
        super().__init__()
        self._document = document

    def compose(self) -> ComposeResult:
        doc = self._document
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static(f"Anular {doc.control_number}", id="header-bar")
                yield Button("✕", id="btn-modal-close")
            with VerticalScroll(id="form-container"):
                yield Label("Motivo", classes="form-label")
                yield Select(VOID_REASON_OPTIONS, value=2, allow_blank=False, id="reason-select")
                yield Label("Responsable", classes="form-label")
                yield Input(placeholder="Nombre de quien autoriza", id="responsible-name")
                with Horizontal(classes="form-row"):
                    yield Select(IDENTITY_DOC_OPTIONS, value="13", allow_blank=False, id="responsible-doc-type")
                    yield Input(placeholder="Número de documento", id="responsible-doc-number")
                yield Label("Solicitante (vacío: el mismo responsable)", classes="form-label")
                yield Input(placeholder="Nombre de quien solicita", id="requester-name")
                with Horizontal(classes="form-row"):
                    yield Select(IDENTITY_DOC_OPTIONS, value="13", allow_blank=False, id="requester-doc-type")
                    yield Input(placeholder="Número de documento", id="requester-doc-number")
                yield Label("Justificación (obligatoria con motivo 3)", classes="form-label")
                yield Input(id="justification")
                yield Label("Código de generación del reemplazo (obligatorio con motivo 1)", classes="form-label")
                yield Input(placeholder="XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX", id="replacement-code")
                yield Label("", id="error-label")
            with Horizontal(classes="button-bar"):
                yield Button("✕ Cerrar", id="btn-volver")
                yield Button("⊘ Anular", id="btn-anular", variant="error")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "btn-anular":
                self._do_prepare()
            case "btn-volver" | "btn-modal-close":
                self.dismiss(None)

    def _value(self, widget_id: str) -> str:
        return self.query_one(f"#{widget_id}", Input).value.strip()

    def build_request(self) -> VoidRequest:
        """Collect the form into a VoidRequest. Raises ValueError for missing fields."""
        name = self._value("responsible-name")
        number = self._value("responsible-doc-number")
        if not name or not number:
            raise ValueError("Indique el nombre y documento del responsable")
        doc_type = str(self.query_one("#responsible-doc-type", Select).value)
        requester = self._value("requester-name")
        requester_number = self._value("requester-doc-number")
        if requester and not requester_number:
            raise ValueError("Indique el documento del solicitante")
        return VoidRequest(
            reason=VoidReason(int(self.query_one("#reason-select", Select).value)),  # type: ignore[arg-type]
            responsible_name=name,
            responsible_doc_type=doc_type,
            responsible_doc_number=number,
            requester_name=requester or name,
            requester_doc_type=(
                str(self.query_one("#requester-doc-type", Select).value) if requester else doc_type
            ),
            requester_doc_number=requester_number or number,
            justification=self._value("justification") or None,
            replacement_code=self._value("replacement-code") or None,
        )

    def _do_prepare(self) -> None:
        error_label = self.query_one("#error-label", Label)
        error_label.update("")
        try:
            request = self.build_request()
        except ValueError as e:
            error_label.update(str(e))
            return

        from facturador.tui.screens.confirm import ConfirmScreen

        self.app.push_screen(
            ConfirmScreen(
                f"Se invalidará {self._document.control_number}\n"
                f"({self._document.doc_type.label}).\n\n"
                "La invalidación aceptada por MH no se puede revertir.",
                title="⚠ Invalidación",
                confirm_label="Anular",
            ),
            callback=lambda ok: self._on_confirmed(ok, request),
        )

    def _on_confirmed(self, confirmed: bool | None, request: VoidRequest) -> None:
        if not confirmed:
            return
        self.query_one("#btn-anular", Button).disabled = True
        self.notify("Enviando invalidación a MH…", timeout=4)
        self._run_void(request)

    @work(thread=True)
    def _run_void(self, request: VoidRequest) -> None:
        try:
            from facturador.services.invalidation import void_document

            result = void_document(
                self._document.id, request, self.app.services()  # type: ignore[attr-defined]
            )
        except Exception as e:
            self.app.call_from_thread(self._on_error, str(e))
            return
        if result.success:
            self.app.call_from_thread(self._on_success, result.seal or "")
        else:
            self.app.call_from_thread(self._on_error, f"{result.state.value}: {result.error}")

    def _on_success(self, seal: str) -> None:
        self.notify(f"Documento invalidado. Sello: {seal}", timeout=6)
        self.dismiss(True)

    def _on_error(self, msg: str) -> None:
        self.query_one("#error-label", Label).update(msg)
        self.query_one("#btn-anular", Button).disabled = False
        self.notify(msg, severity="error", timeout=6)

    def action_go_back(self) -> None:
        self.dismiss(None)
