from __future__ import annotations

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Label, RichLog, Static

from facturador.models.document import TaxDocument


class QueryScreen(ModalScreen):
    """Stored detail of one document plus its live status at MH."""

    BINDINGS = [
        Binding("escape", "go_back", "Volver"),
        Binding("q", "go_back", show=False),
    ]

    def __init__(self, document_id: int) -> None:
        super().__init__()
        self._document_id = document_id

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static(f"Documento {self._document_id}", id="header-bar")
                yield Button("✕", id="btn-modal-close")
            yield Label("", id="error-label")
            yield RichLog(id="query-result", wrap=True, markup=True)
            with Horizontal(classes="button-bar"):
                yield Button("✕ Cerrar", id="btn-volver", variant="error")
                yield Button(
                    "▶ Consultar en MH",
                    id="btn-consultar",
                    variant="primary",
                    tooltip="Consultar el estado del DTE en el Ministerio de Hacienda",
                )

    def on_mount(self) -> None:
        self._load_document()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "btn-consultar":
                self._do_query()
            case "btn-volver" | "btn-modal-close":
                self.dismiss(None)

    @work(thread=True)
    def _load_document(self) -> None:
        try:
            from facturador.services.invalidation import list_voids
            from facturador.services.issuance import find_document

            services = self.app.services()  # type: ignore[attr-defined]
            doc = find_document(services, self._document_id)
            voids = list_voids(services, doc.id)
            lines = self._describe(doc)
            for event in voids:
                lines.append(
                    f"Invalidación {event.id}: {event.state.value} "
                    f"({event.reason.label}) {event.seal or ''}".rstrip()
                )
            self.app.call_from_thread(self._show_lines, lines)
        except Exception as e:
            self.app.call_from_thread(self._show_error, str(e))

    @staticmethod
    def _describe(doc: TaxDocument) -> list[str]:
        from facturador.utils.formatters import format_usd

        t = doc.totals
        lines = [
            f"[bold]{doc.doc_type.label}[/bold]",
            f"Estado:              {doc.state.value}",
            f"Código de generación: {doc.generation_code}",
            f"Número de control:   {doc.control_number}",
            f"Fecha de emisión:    {doc.emission_date or '-'}",
            f"Cliente:             {doc.client or 'consumidor final'}",
            f"Receptor:            {doc.receiver.get('nombre') or '-'}",
            "",
            f"Gravado:  {format_usd(t.taxed)}   Exento: {format_usd(t.exempt)}   "
            f"No sujeto: {format_usd(t.not_subject)}",
            f"IVA:      {format_usd(t.tax)}   Total a pagar: [bold]{format_usd(t.total_to_pay)}[/bold]",
            f"{t.total_in_words}",
            "",
        ]
        if doc.seal:
            lines.append(f"Sello de recepción:  [green]{doc.seal}[/green]")
            lines.append(f"Procesado:           {doc.processed_at or '-'}")
        if doc.message_description:
            lines.append(f"Mensaje MH:          {doc.message_code or ''} {doc.message_description}")
        for obs in doc.observations:
            lines.append(f"  • {obs}")
        if doc.last_error:
            lines.append(f"[red]Último error:[/red] {doc.last_error}")
        if doc.related_code:
            lines.append(f"Documento relacionado: {doc.related_code}")
        if doc.voided_at:
            lines.append(f"[magenta]Invalidado:[/magenta] {doc.voided_at}")
        return lines

    def _do_query(self) -> None:
        self.query_one("#error-label", Label).update("")
        self.notify("Consultando MH…", severity="information", timeout=3)
        self._run_query()

    @work(thread=True)
    def _run_query(self) -> None:
        try:
            from facturador.services.issuance import query_status

            result = query_status(self._document_id, self.app.services())  # type: ignore[attr-defined]
            lines = [
                "",
                "[bold]Estado en MH[/bold]",
                f"Estado: {result.state}",
                f"Sello:  {result.seal or '-'}",
                f"Fecha:  {result.processed_at or '-'}",
                f"Mensaje: {result.message_code or ''} {result.message_description or ''}".rstrip(),
                *(f"  • {o}" for o in result.observations),
            ]
            self.app.call_from_thread(self._show_lines, lines)
            self.app.call_from_thread(self.notify, "Consulta completada", timeout=3)
        except Exception as e:
            self.app.call_from_thread(self._show_error, str(e))

    def _show_lines(self, lines: list[str]) -> None:
        log = self.query_one("#query-result", RichLog)
        for line in lines:
            log.write(line)

    def _show_error(self, msg: str) -> None:
        self.query_one("#error-label", Label).update(f"Error: {msg}")
        self.notify(f"Error: {msg}", severity="error", timeout=5)

    def action_go_back(self) -> None:
        self.dismiss(None)
