"""Background progress spinner for long borg operations."""

from typing import Optional

from rich.console import Console
from rich.status import Status


class ProgressIndicator:
    """Wraps a rich status spinner; ``stop`` is safe to call at any time."""

    def __init__(self, console: Console, enabled: bool = True):
        self.console = console
        self.enabled = enabled
        self._status: Optional[Status] = None

    @property
    def active(self) -> bool:
        return self._status is not None

    def start(self, message: str):
        self.stop()
        if not self.enabled:
            return
        self._status = self.console.status(f"[cyan]{message}...[/cyan]", spinner="dots")
        self._status.start()

    def stop(self):
        status, self._status = self._status, None
        if status is not None:
            status.stop()
