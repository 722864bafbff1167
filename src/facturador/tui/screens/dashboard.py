from __future__ import annotations

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.events import Key
from textual.screen import Screen
from textual.widgets import Button, DataTable, Footer, Label, Select, Static

from facturador.models.document import DocumentState, DocumentType, TaxDocument

_STATE_STYLES = {
    DocumentState.BORRADOR: "[yellow]BORRADOR[/yellow]",
    DocumentState.FIRMADO: "[cyan]FIRMADO[/cyan]",
    DocumentState.PROCESADO: "[green]PROCESADO[/green]",
    DocumentState.RECHAZADO: "[red]RECHAZADO[/red]",
    DocumentState.INVALIDADO: "[magenta]INVALIDADO[/magenta]",
}

_RESENDABLE = (DocumentState.BORRADOR, DocumentState.FIRMADO, DocumentState.RECHAZADO)


class DashboardScreen(Screen):
    """Main screen: document list with lifecycle actions."""

    BINDINGS = [
        # Row actions, hidden from footer (buttons above the table)
        Binding("n", "new_document", "Nuevo DTE", show=False),
        Binding("r", "resend", "Reenviar", show=False),
        Binding("a", "void", "Anular", show=False),
        Binding("c", "query", "Consultar", show=False),
        Binding("v", "verify", "Verificar"),
        Binding("e", "toggle_env", "Ambiente"),
        Binding("f", "focus_filter", "Filtrar"),
        Binding("h", "help", "Ayuda"),
        Binding("q", "quit", "Salir"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._all_documents: list[TaxDocument] = []

    def compose(self) -> ComposeResult:
        env = self.app.env  # type: ignore[attr-defined]

        with Horizontal(id="top-bar"):
            yield Static("Facturador DTE", id="app-title")
            yield Button(
                self._env_label(env),
                id="env-badge",
                classes="env-test" if env == "pruebas" else "env-prod",
                tooltip="Alternar entre pruebas y producción (e)",
            )

        with Horizontal(id="info-bar"):
            with Vertical(id="card-emitter", classes="info-card"):
                yield Label("Emisor", classes="card-title")
                yield Label("…", id="emitter-info", classes="card-value")
            with Vertical(id="card-signer", classes="info-card"):
                yield Label("Firmador", classes="card-title")
                yield Label("…", id="signer-info", classes="card-value")
            with Vertical(id="card-seq", classes="info-card"):
                yield Label("Numeración", classes="card-title")
                yield Label("…", id="seq-info", classes="card-value")

        with Horizontal(id="filter-bar"):
            yield Static("Documentos", id="section-title")
            yield Select(
                [("Todos", "todos"), *((s.value.capitalize(), s.value) for s in DocumentState)],
                value="todos",
                allow_blank=False,
                id="filter-state",
                tooltip="Filtrar por estado",
            )
            yield Select(
                [("Todos los tipos", "todos"), *((t.label, t.value) for t in DocumentType)],
                value="todos",
                allow_blank=False,
                id="filter-type",
                tooltip="Filtrar por tipo de DTE",
            )

        with Horizontal(id="action-bar"):
            yield Button("+ Nuevo DTE", id="btn-new", variant="primary", tooltip="Emitir un DTE (n)")
            yield Button("↻ Reenviar", id="btn-resend", tooltip="Reenviar el DTE seleccionado (r)")
            yield Button("⊘ Anular", id="btn-void", variant="error", tooltip="Invalidar el DTE seleccionado (a)")
            yield Button("▶ Consultar", id="btn-query", tooltip="Detalle y estado en MH (c)")

        yield DataTable(id="documents-table", cursor_type="row")

        yield Static(
            "No hay documentos.\nPresione [bold]n[/bold] para emitir el primero.",
            id="empty-state",
        )

        yield Footer()

    def on_mount(self) -> None:
        self._load_emitter()
        self._load_signer()
        self._load_sequence()
        self._scan_documents()
        self.query_one("#documents-table", DataTable).focus()

    def on_key(self, event: Key) -> None:
        table = self.query_one("#documents-table", DataTable)
        match event.key:
            case "j":
                table.action_cursor_down()
            case "k":
                table.action_cursor_up()
            case "enter":
                self.action_query()
            case _:
                return
        event.prevent_default()
        event.stop()

    @staticmethod
    def _env_label(env: str) -> str:
        return "⇄ PRUEBAS" if env == "pruebas" else "⇄ PRODUCCIÓN"

    # --- Data loading (threaded) ---

    @work(thread=True)
    def _load_emitter(self) -> None:
        try:
            from facturador.models.emitter import Emitter

            emitter = Emitter.from_dict(self.app.services().load_emitter())  # type: ignore[attr-defined]
            text = f"{emitter.nombre}\nNIT: {emitter.nit}"
        except Exception as e:
            text = f"Error: {e}"
        self.app.call_from_thread(self._update_label, "emitter-info", text)

    @work(thread=True)
    def _load_signer(self) -> None:
        try:
            from facturador.services.signer_client import check_signer_connectivity

            check_signer_connectivity()
            text = "[green]disponible[/green]"
        except Exception as e:
            text = f"[red]no disponible[/red]\n{e}"
        self.app.call_from_thread(self._update_label, "signer-info", text)

    @work(thread=True)
    def _load_sequence(self) -> None:
        try:
            from facturador.models.emitter import Emitter

            services = self.app.services()  # type: ignore[attr-defined]
            branch = Emitter.from_dict(services.load_emitter()).branch()
            text = f"Próx. factura:\n{services.blocks.peek_control_number(branch, '01')}"
        except Exception as e:
            text = f"error - {e}"
        self.app.call_from_thread(self._update_label, "seq-info", text)

    @work(thread=True)
    def _scan_documents(self) -> None:
        try:
            from facturador.services.issuance import list_documents

            docs = list_documents(self.app.services())  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(
                self.notify, f"Error leyendo documentos: {e}", severity="error", timeout=5
            )
            docs = []
        docs.sort(key=lambda d: d.id or 0, reverse=True)
        self.app.call_from_thread(self._on_documents_loaded, docs)

    def _on_documents_loaded(self, docs: list[TaxDocument]) -> None:
        self._all_documents = docs
        self._apply_filter(show_toast=False)

    # --- Filtering ---

    def _apply_filter(self, *, show_toast: bool = True) -> None:
        filtered = self._all_documents
        state = self.query_one("#filter-state", Select).value
        if state != "todos":
            filtered = [d for d in filtered if d.state.value == state]
        doc_type = self.query_one("#filter-type", Select).value
        if doc_type != "todos":
            filtered = [d for d in filtered if d.doc_type.value == doc_type]

        self._populate_table(filtered)
        if show_toast:
            count = len(filtered)
            if count == 0:
                self.notify("Ningún documento para el filtro seleccionado", severity="warning", timeout=3)
            else:
                self.notify(f"{count} documento(s)", timeout=2)

    def _populate_table(self, docs: list[TaxDocument]) -> None:
        from facturador.utils.formatters import format_usd

        table = self.query_one("#documents-table", DataTable)
        table.clear(columns=True)
        table.add_columns("ID", "Fecha", "Tipo", "Estado", "Número de control", "Cliente", "Total")
        for doc in docs:
            table.add_row(
                str(doc.id),
                (doc.emission_date or "")[:10],
                doc.doc_type.value,
                _STATE_STYLES.get(doc.state, doc.state.value),
                doc.control_number,
                doc.client or "consumidor final",
                format_usd(doc.totals.total_to_pay),
                key=str(doc.id),
            )

        has_rows = table.row_count > 0
        table.display = has_rows
        self.query_one("#empty-state", Static).display = not has_rows

    # --- Event handlers ---

    def on_select_changed(self, event: Select.Changed) -> None:
        self._apply_filter()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "env-badge":
                self.action_toggle_env()
            case "btn-new":
                self.action_new_document()
            case "btn-resend":
                self.action_resend()
            case "btn-void":
                self.action_void()
            case "btn-query":
                self.action_query()

    def _selected_document(self) -> TaxDocument | None:
        table = self.query_one("#documents-table", DataTable)
        if table.row_count == 0:
            return None
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        doc_id = int(str(row_key.value))
        return next((d for d in self._all_documents if d.id == doc_id), None)

    def _update_label(self, label_id: str, text: str) -> None:
        try:
            label = self.query_one(f"#{label_id}", Label)
            label.update(text)
        except Exception:
            pass

    def refresh_documents(self) -> None:
        self._load_sequence()
        self._scan_documents()

    # --- Actions ---

    def action_new_document(self) -> None:
        from facturador.tui.screens.new_document import NewDocumentScreen

        self.app.push_screen(NewDocumentScreen(), callback=lambda _: self.refresh_documents())

    def action_resend(self) -> None:
        doc = self._selected_document()
        if doc is None:
            self.notify("Ningún documento seleccionado", severity="warning", timeout=3)
            return
        if doc.state not in _RESENDABLE:
            self.notify(
                f"Solo se reenvían documentos en borrador, firmados o rechazados ({doc.state.value})",
                severity="warning",
                timeout=4,
            )
            return
        self.notify(f"Reenviando {doc.control_number}…", timeout=3)
        self._run_resend(doc.id)

    @work(thread=True)
    def _run_resend(self, document_id: int) -> None:
        try:
            from facturador.services.issuance import resend_document

            result = resend_document(document_id, self.app.services())  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(self.notify, f"Error: {e}", severity="error", timeout=5)
            return
        if result.success:
            self.app.call_from_thread(
                self.notify, f"Documento procesado. Sello: {result.seal}", timeout=5
            )
        else:
            self.app.call_from_thread(
                self.notify,
                f"{result.state.value}: {result.error}",
                severity="error",
                timeout=6,
            )
        self.app.call_from_thread(self.refresh_documents)

    def action_void(self) -> None:
        doc = self._selected_document()
        if doc is None:
            self.notify("Ningún documento seleccionado", severity="warning", timeout=3)
            return
        if doc.state is not DocumentState.PROCESADO:
            self.notify("Solo se pueden anular documentos procesados", severity="warning", timeout=3)
            return
        from facturador.tui.screens.void import VoidScreen

        self.app.push_screen(VoidScreen(doc), callback=lambda _: self.refresh_documents())

    def action_query(self) -> None:
        doc = self._selected_document()
        if doc is None:
            self.notify("Ningún documento seleccionado", severity="warning", timeout=3)
            return
        from facturador.tui.screens.query import QueryScreen

        self.app.push_screen(QueryScreen(doc.id), callback=lambda _: self.refresh_documents())

    def action_help(self) -> None:
        from facturador.tui.screens.help import HelpScreen

        self.app.push_screen(HelpScreen())

    def action_verify(self) -> None:
        from facturador.tui.screens.validate import ValidateScreen

        self.app.push_screen(ValidateScreen())

    def action_toggle_env(self) -> None:
        if self.app.env == "pruebas":  # type: ignore[attr-defined]
            from facturador.tui.screens.confirm import ConfirmScreen

            self.app.push_screen(
                ConfirmScreen(
                    "Va a cambiar al ambiente de PRODUCCIÓN.\n\n"
                    "Los documentos emitidos tendrán validez fiscal\n"
                    "y solo podrán anularse mediante invalidación.\n\n"
                    "¿Desea continuar?",
                    title="⚠ Producción",
                ),
                callback=self._on_env_toggle_confirmed,
            )
        else:
            self._switch_env("pruebas")

    def _on_env_toggle_confirmed(self, confirmed: bool | None) -> None:
        if confirmed:
            self._switch_env("produccion")

    def _switch_env(self, env: str) -> None:
        self.app.env = env  # type: ignore[attr-defined]
        badge = self.query_one("#env-badge", Button)
        badge.label = self._env_label(env)
        badge.set_class(env == "pruebas", "env-test")
        badge.set_class(env != "pruebas", "env-prod")
        self.refresh_documents()

    def action_focus_filter(self) -> None:
        self.query_one("#filter-state", Select).focus()

    def action_quit(self) -> None:
        self.app.exit()
