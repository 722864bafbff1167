from __future__ import annotations

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, RichLog, Static


class ValidateScreen(ModalScreen):
    """Configuration, credentials, connectivity and local store checks."""

    BINDINGS = [
        Binding("escape", "go_back", "Volver"),
        Binding("q", "go_back", show=False),
    ]

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static("Verificar configuración", id="header-bar")
                yield Button("✕", id="btn-modal-close")
            yield RichLog(id="validation-output", wrap=True, markup=True)
            with Horizontal(classes="button-bar"):
                yield Button("✕ Cerrar", id="btn-volver", variant="error")

    def on_mount(self) -> None:
        self.notify("Verificando configuración…", severity="information", timeout=2)
        self._run_validation()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "btn-volver" | "btn-modal-close":
                self.app.pop_screen()

    @work(thread=True)
    def _run_validation(self) -> None:
        lines: list[str] = []
        env = self.app.env  # type: ignore[attr-defined]
        services = self.app.services()  # type: ignore[attr-defined]

        # Emitter and branches
        emitter = None
        try:
            from facturador.models.emitter import Emitter

            emitter = Emitter.from_dict(services.load_emitter())
            lines.append(f"[green]OK[/green] Emisor: {emitter.nombre}")
            lines.append(f"   NIT: {emitter.nit}  NRC: {emitter.nrc}")
            if not emitter.branches:
                lines.append("[red]ERROR[/red] Sin sucursales configuradas (sucursales)")
        except Exception as e:
            lines.append(f"[red]ERROR[/red] Emisor: {e}")

        # Numbering blocks per branch
        if emitter is not None:
            for branch in emitter.branches:
                for doc_type in ("01", "03", "05", "14"):
                    block = services.blocks.find_active_block(branch.code, doc_type)
                    if block is None:
                        lines.append(
                            f"[yellow]AVISO[/yellow] Sucursal {branch.code}: sin bloque activo para {doc_type}"
                        )
                    else:
                        lines.append(
                            f"[green]OK[/green] Sucursal {branch.code} tipo {doc_type}: "
                            f"quedan {block.remaining} número(s)"
                        )

        # Credentials
        from facturador.config import get_firmador_password, get_mh_password

        for label, getter in (("MH", get_mh_password), ("Firmador", get_firmador_password)):
            try:
                getter()
                lines.append(f"[green]OK[/green] Contraseña {label} configurada")
            except KeyError:
                lines.append(f"[red]ERROR[/red] Contraseña {label} no configurada")
                lines.append("   Ejecute 'facturador init' para configurarla")

        # Clients
        try:
            from facturador.config import list_clients
            from facturador.models.receiver import Receiver

            clients = list_clients()
            if clients:
                for c in clients:
                    try:
                        Receiver.from_dict(services.load_client(c))
                        lines.append(f"[green]OK[/green] Cliente: {c}")
                    except Exception as ce:
                        lines.append(f"[red]ERROR[/red] Cliente {c}: {ce}")
            else:
                lines.append("[yellow]AVISO[/yellow] Ningún cliente configurado")
        except Exception as e:
            lines.append(f"[red]ERROR[/red] Clientes: {e}")

        # Connectivity
        from facturador.config import MH_URLS, get_firmador_url
        from facturador.services.mh_client import check_mh_connectivity
        from facturador.services.signer_client import check_signer_connectivity

        checks = [
            ("Firmador", get_firmador_url(), check_signer_connectivity),
            (f"MH ({env})", MH_URLS[env], lambda: check_mh_connectivity(env)),
        ]
        for label, endpoint, check_fn in checks:
            try:
                check_fn()
                lines.append(f"[green]OK[/green] Conectividad {label}")
            except Exception as e:
                lines.append(f"[red]ERROR[/red] Conectividad {label}: {e}")
                lines.append(f"   Endpoint: {endpoint}")

        # Local stores
        try:
            from facturador.utils.registry import check_store_health

            for health in check_store_health(env):
                if health.ok:
                    lines.append(f"[green]OK[/green] {health.name}: {health.count} registro(s)")
                else:
                    lines.append(f"[red]ERROR[/red] {health.name}: archivo corrupto")
                for b in health.corrupt_backups:
                    lines.append(f"[yellow]AVISO[/yellow] Respaldo encontrado: {b}")
                    lines.append(f"   Recuperación: renombrar a {health.name} y reiniciar")
        except Exception as e:
            lines.append(f"[red]ERROR[/red] Almacenamiento local: {e}")

        self.app.call_from_thread(self._display_lines, lines)

    def _display_lines(self, lines: list[str]) -> None:
        log = self.query_one("#validation-output", RichLog)
        for line in lines:
            log.write(line)
        if any("[red]" in line for line in lines):
            self.notify("Verificación completada con errores", severity="warning", timeout=3)
        else:
            self.notify("Verificación completada: todo OK", timeout=3)

    def action_go_back(self) -> None:
        self.app.pop_screen()
