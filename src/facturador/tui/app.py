from __future__ import annotations

from collections.abc import Callable

from textual.app import App
from textual.binding import Binding

from facturador.services.context import Services


class FacturadorApp(App):
    """Facturador DTE TUI application."""

    CSS_PATH = "app.tcss"
    TITLE = "Facturador DTE"
    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("q", "quit", "Salir", priority=True),
    ]

    def __init__(
        self,
        env: str | None = None,
        services_factory: Callable[[str], Services] | None = None,
    ):
        super().__init__()
        if env is None:
            from facturador.config import get_default_env

            env = get_default_env()
        self.env = env
        self._services_factory = services_factory or Services.default

    def services(self) -> Services:
        """Collaborators for the current environment."""
        return self._services_factory(self.env)

    def on_mount(self) -> None:
        from facturador.tui.screens.dashboard import DashboardScreen

        self.push_screen(DashboardScreen())
