"""Registry mapping command kinds to server-side handlers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from hubsync.errors import SyncError

if TYPE_CHECKING:  # pragma: no cover
    from hubsync.protocol.commands import Command
    from hubsync.server.sessions import HandlerContext

CommandHandler = Callable[["HandlerContext", "Command"], Awaitable[Any]]


class CommandRejected(SyncError):
    """Raised by handlers to answer a command with an error reply."""

    def __init__(self, message: str, *, code: str = "command.rejected") -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)


@dataclass(frozen=True)
class CommandRegistration:
    name: str
    handler: CommandHandler
    admin_only: bool = False


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, CommandRegistration] = {}

    def register(self, registration: CommandRegistration) -> None:
        name = registration.name
        if name in self._commands:
            raise ValueError(f"command '{name}' already registered")
        self._commands[name] = registration

    def get(self, name: str) -> CommandRegistration | None:
        return self._commands.get(name)

    def get_handler(self, name: str) -> CommandHandler | None:
        entry = self._commands.get(name)
        if entry is None:
            return None
        return entry.handler

    def command_names(self) -> tuple[str, ...]:
        return tuple(self._commands.keys())

    def clear(self) -> None:
        self._commands.clear()


def register_command(
    registry: CommandRegistry,
    name: str,
    handler: CommandHandler,
    *,
    admin_only: bool = False,
) -> None:
    registry.register(CommandRegistration(name=name, handler=handler, admin_only=admin_only))


__all__ = [
    "CommandHandler",
    "CommandRegistration",
    "CommandRegistry",
    "CommandRejected",
    "register_command",
]
