from __future__ import annotations

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, RichLog, Static

_SHORTCUTS = [
    ("n", "Nuevo DTE", "Emitir factura, CCF o FSE"),
    ("r", "Reenviar", "Firmar y transmitir de nuevo un DTE no procesado"),
    ("a", "Anular", "Invalidar el DTE seleccionado"),
    ("c", "Consultar", "Detalle local y estado en MH"),
    ("v", "Verificar", "Configuración, credenciales y conectividad"),
    ("e", "Ambiente", "Alternar pruebas/producción"),
    ("f", "Filtrar", "Enfocar el filtro de estado"),
    ("h", "Ayuda", "Esta pantalla"),
    ("q", "Salir", "Cerrar la aplicación"),
]


class HelpScreen(ModalScreen):
    """Keyboard shortcuts, document states and disclaimer."""

    BINDINGS = [
        Binding("escape", "go_back", "Volver"),
    ]

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static("Ayuda", id="header-bar")
                yield Button("✕", id="btn-modal-close")
            yield RichLog(id="help-content", wrap=True, markup=True)
            with Horizontal(classes="button-bar"):
                yield Button("✕ Cerrar", id="btn-volver")

    def on_mount(self) -> None:
        log = self.query_one("#help-content", RichLog)

        log.write("[bold]Facturador DTE[/bold]")
        log.write("")
        log.write(
            "Emisión, transmisión e invalidación de Documentos Tributarios "
            "Electrónicos ante el Ministerio de Hacienda de El Salvador."
        )
        log.write("")

        log.write("[bold]Atajos de teclado[/bold]")
        log.write("")
        for key, name, desc in _SHORTCUTS:
            log.write(f"  [bold cyan]{key}[/bold cyan]  {name:<12} {desc}")
        log.write("")
        log.write("[bold]Navegación en la tabla[/bold]")
        log.write("")
        log.write("  [bold cyan]j / ↓[/bold cyan]  Fila siguiente")
        log.write("  [bold cyan]k / ↑[/bold cyan]  Fila anterior")
        log.write("  [bold cyan]enter[/bold cyan]   Abrir el documento seleccionado")
        log.write("")

        log.write("[bold]Estados[/bold]")
        log.write("")
        log.write("  [yellow]BORRADOR[/yellow]    Creado; la firma falló o no se intentó")
        log.write("  [cyan]FIRMADO[/cyan]     Firmado, pendiente de respuesta de MH")
        log.write("  [green]PROCESADO[/green]   Aceptado por MH con sello de recepción")
        log.write("  [red]RECHAZADO[/red]   Rechazado por MH o sin respuesta; puede reenviarse")
        log.write("  [magenta]INVALIDADO[/magenta]  Anulado mediante evento de invalidación")
        log.write("")

        log.write("[bold yellow]Aviso[/bold yellow]")
        log.write("")
        log.write(
            "Los documentos emitidos en [bold red]PRODUCCIÓN[/bold red] tienen validez "
            "fiscal. Un DTE con sello solo se puede invalidar dentro del plazo legal "
            "(90 días para facturas y FSE, 1 día para CCF y notas). Use el ambiente de "
            "[bold yellow]PRUEBAS[/bold yellow] para ensayos."
        )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id in ("btn-volver", "btn-modal-close"):
            self.app.pop_screen()

    def action_go_back(self) -> None:
        self.app.pop_screen()
