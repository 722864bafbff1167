from __future__ import annotations

from dataclasses import dataclass

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Checkbox, DataTable, Input, Label, Select, Static

from facturador.models.document import LineItem
from facturador.services.issuance import IssueRequest, IssueResult, resolve_doc_type
from facturador.tui.options import CONDITION_OPTIONS, DOC_TYPE_OPTIONS, TREATMENT_OPTIONS

_WALK_IN = "__consumidor__"


@dataclass
class _Preview:
    request: IssueRequest
    doc_type_label: str
    receiver_name: str
    control_number: str
    late_fee: str | None


class NewDocumentScreen(ModalScreen):
    """Three-phase screen: form -> preview -> result."""

    BINDINGS = [
        Binding("escape", "go_back", "Volver"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._preview: _Preview | None = None
        self._phase = "form"
        self._result_id: int | None = None

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static("Nuevo DTE", id="header-bar")
                yield Button("✕", id="btn-modal-close")

            # Phase 1: Form
            with Container(id="form-container"):
                yield Label("Cliente", classes="form-label")
                yield Select(
                    [("Consumidor final", _WALK_IN)],
                    value=_WALK_IN,
                    allow_blank=False,
                    id="client-select",
                )
                yield Label("Tipo de documento", classes="form-label")
                yield Select(DOC_TYPE_OPTIONS, value="auto", allow_blank=False, id="type-select")
                yield Label("Descripción", classes="form-label")
                yield Input(placeholder="Servicio de internet residencial", id="description")
                with Horizontal(classes="form-row"):
                    yield Input(placeholder="Cantidad", value="1", id="quantity")
                    yield Input(placeholder="Precio unitario", id="unit-price")
                    yield Input(placeholder="Descuento", value="0", id="discount")
                yield Select(TREATMENT_OPTIONS, value="gravado", allow_blank=False, id="treatment-select")
                yield Label("Condición de la operación", classes="form-label")
                yield Select(CONDITION_OPTIONS, value=1, allow_blank=False, id="condition-select")
                yield Checkbox("Agregar mora pendiente del cliente", id="late-fee")
                with Horizontal(classes="button-bar"):
                    yield Button("✕ Cerrar", id="btn-form-volver")
                    yield Button("▶ Preparar", id="btn-preparar", variant="primary")
                yield Label("", id="error-label")

            # Phase 2: Preview
            with Container(id="preview-container"):
                yield DataTable(id="preview-table", show_header=False)
                with Horizontal(classes="button-bar"):
                    yield Button("← Volver", id="btn-preview-volver")
                    yield Button("↑ Emitir y transmitir", id="btn-emitir", variant="primary")
                yield Label("", id="status-label")

            # Phase 3: Result
            with Container(id="result-container"):
                yield Label("", id="result-info")
                with Horizontal(classes="button-bar"):
                    yield Button("✕ Cerrar", id="btn-result-close")
                    yield Button("▶ Ver detalle", id="btn-result-detail")

    def on_mount(self) -> None:
        self._show_phase("form")
        self._load_clients()

    def _show_phase(self, phase: str) -> None:
        self._phase = phase
        self.query_one("#form-container").display = phase == "form"
        self.query_one("#preview-container").display = phase == "preview"
        self.query_one("#result-container").display = phase == "result"
        if phase == "form":
            self.query_one("#btn-preparar", Button).disabled = False

    @work(thread=True)
    def _load_clients(self) -> None:
        try:
            from facturador.config import list_clients

            clients = list_clients()
        except Exception:
            clients = []
        self.app.call_from_thread(self._populate_clients, clients)

    def _populate_clients(self, clients: list[str]) -> None:
        select = self.query_one("#client-select", Select)
        select.set_options([("Consumidor final", _WALK_IN), *((c, c) for c in clients)])
        select.value = _WALK_IN

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "btn-preparar":
                self._do_prepare()
            case "btn-form-volver" | "btn-result-close" | "btn-modal-close":
                self.dismiss(self._result_id)
            case "btn-emitir":
                self._do_submit()
            case "btn-preview-volver":
                self._show_phase("form")
            case "btn-result-detail":
                self._open_detail()

    def build_request(self) -> IssueRequest:
        """Collect the form into an IssueRequest. Raises ValueError on bad input."""
        from facturador.models.document import DocumentType

        description = self.query_one("#description", Input).value.strip()
        if not description:
            raise ValueError("Indique la descripción del ítem")
        item = LineItem.from_dict(
            {
                "descripcion": description,
                "cantidad": self.query_one("#quantity", Input).value.strip() or "1",
                "precio_unitario": self.query_one("#unit-price", Input).value.strip(),
                "descuento": self.query_one("#discount", Input).value.strip() or "0",
                "tratamiento": str(self.query_one("#treatment-select", Select).value),
            }
        )
        client = str(self.query_one("#client-select", Select).value)
        doc_type = str(self.query_one("#type-select", Select).value)
        return IssueRequest(
            items=[item],
            client=None if client == _WALK_IN else client,
            doc_type=None if doc_type == "auto" else DocumentType(doc_type),
            condition=int(self.query_one("#condition-select", Select).value),  # type: ignore[arg-type]
            apply_late_fee=self.query_one("#late-fee", Checkbox).value,
        )

    def _do_prepare(self) -> None:
        error_label = self.query_one("#error-label", Label)
        error_label.update("")
        try:
            request = self.build_request()
        except ValueError as e:
            error_label.update(str(e))
            return
        self.query_one("#btn-preparar", Button).disabled = True
        self.notify("Preparando DTE…", severity="information", timeout=3)
        self._run_prepare(request)

    @work(thread=True)
    def _run_prepare(self, request: IssueRequest) -> None:
        try:
            from facturador.models.emitter import Emitter
            from facturador.models.receiver import Receiver
            from facturador.services.late_fee import compute_late_fee

            services = self.app.services()  # type: ignore[attr-defined]
            if request.client:
                receiver = Receiver.from_dict(services.load_client(request.client))
            else:
                receiver = Receiver()
            doc_type = resolve_doc_type(request.doc_type, receiver)
            branch = Emitter.from_dict(services.load_emitter()).branch(request.branch)
            control = services.blocks.peek_control_number(branch, doc_type.value)
            late_fee = None
            if request.apply_late_fee and request.client:
                fee = compute_late_fee(
                    request.client,
                    services.documents.all(),
                    load_client=services.load_client,
                    load_emitter=services.load_emitter,
                )
                late_fee = f"{fee.amount:.2f} ({fee.days_late} días)" if fee.applies else "no aplica"
            preview = _Preview(
                request=request,
                doc_type_label=f"{doc_type.value} — {doc_type.label}",
                receiver_name=receiver.nombre or "Consumidor final",
                control_number=control,
                late_fee=late_fee,
            )
            self.app.call_from_thread(self._show_preview, preview)
        except Exception as e:
            self.app.call_from_thread(self._set_error, f"Error al preparar: {e}")

    def _show_preview(self, preview: _Preview) -> None:
        from facturador.utils.formatters import format_usd

        self._preview = preview
        item = preview.request.items[0]
        table = self.query_one("#preview-table", DataTable)
        table.clear(columns=True)
        table.add_columns("Campo", "Valor")
        table.add_row("Tipo", preview.doc_type_label)
        table.add_row("Receptor", preview.receiver_name)
        table.add_row("Ítem", item.description)
        table.add_row("Cantidad × precio", f"{item.quantity} × {format_usd(item.unit_price)}")
        if item.discount:
            table.add_row("Descuento", format_usd(item.discount))
        table.add_row("Tratamiento", item.treatment.value)
        if preview.late_fee:
            table.add_row("Mora", preview.late_fee)
        table.add_row("Número de control", preview.control_number)
        table.add_row("Ambiente", self.app.env)  # type: ignore[attr-defined]

        self.query_one("#status-label", Label).update("")
        self._show_phase("preview")
        self.notify("DTE preparado. Revise los datos antes de emitir", timeout=3)

    def _set_error(self, msg: str) -> None:
        self.query_one("#error-label", Label).update(msg)
        self.query_one("#btn-preparar", Button).disabled = False

    def _do_submit(self) -> None:
        if not self._preview:
            return
        self.query_one("#btn-emitir", Button).disabled = True
        self.notify("Firmando y transmitiendo a MH…", severity="information", timeout=5)
        self._run_submit()

    @work(thread=True)
    def _run_submit(self) -> None:
        preview = self._preview
        if preview is None:
            return
        try:
            from facturador.services.issuance import issue_invoice

            result = issue_invoice(preview.request, self.app.services())  # type: ignore[attr-defined]
            self.app.call_from_thread(self._show_result, result)
        except Exception as e:
            self.app.call_from_thread(self._on_submit_error, f"Error al emitir: {e}")

    def _show_result(self, result: IssueResult) -> None:
        from facturador.utils.formatters import format_usd

        self._result_id = result.id
        total = format_usd(result.total_to_pay) if result.total_to_pay is not None else "-"
        if result.success:
            text = (
                "DTE procesado por MH\n\n"
                f"Código de generación: {result.generation_code}\n"
                f"Número de control: {result.control_number}\n"
                f"Sello de recepción: {result.seal}\n"
                f"Total: {total}"
            )
            self.notify("DTE procesado", timeout=5)
        else:
            text = (
                f"DTE {result.state.value}\n\n"
                f"Número de control: {result.control_number}\n"
                f"Error: {result.error}"
            )
            if result.errors:
                text += "\n" + "\n".join(f"  • {e}" for e in result.errors)
            self.notify(f"DTE {result.state.value}", severity="error", timeout=5)
        self.query_one("#result-info", Label).update(text)
        self._show_phase("result")

    def _on_submit_error(self, msg: str) -> None:
        self.query_one("#status-label", Label).update(msg)
        self.query_one("#btn-emitir", Button).disabled = False
        self.notify(msg, severity="error", timeout=5)

    def _open_detail(self) -> None:
        if self._result_id is None:
            return
        from facturador.tui.screens.query import QueryScreen

        self.app.push_screen(QueryScreen(self._result_id))

    def action_go_back(self) -> None:
        if self._phase == "preview":
            self._show_phase("form")
        else:
            self.dismiss(self._result_id)
