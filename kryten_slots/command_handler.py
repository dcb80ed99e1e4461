"""Request-reply command handler on kryten.slots.command.

Provides a NATS request-reply API for inter-service communication
and admin tooling.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import __version__
from .free_spins import FreeSpinQueue
from .utils import normalize_username

if TYPE_CHECKING:
    from kryten import KrytenClient

    from .main import SlotsApp


class CommandHandler:
    """Handles request-reply commands on kryten.slots.command."""

    def __init__(
        self,
        app: SlotsApp,
        client: KrytenClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._client = client
        self._logger = logger or logging.getLogger("slots.command")

    async def connect(self) -> None:
        """Subscribe to request-reply on kryten.slots.command."""
        await self._client.subscribe_request_reply(
            "kryten.slots.command",
            self._handle_command,
        )

    async def _handle_command(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route a command request to the appropriate handler."""
        command = request.get("command", "")
        handler = self._HANDLER_MAP.get(command)

        if not handler:
            return {
                "service": "slots",
                "command": command,
                "success": False,
                "error": f"Unknown command: {command}",
            }

        try:
            result = await handler(self, request)
            self._app.commands_processed += 1
            return {
                "service": "slots",
                "command": command,
                "success": True,
                "data": result,
            }
        except Exception as e:
            self._logger.exception("Command handler error for %s", command)
            return {
                "service": "slots",
                "command": command,
                "success": False,
                "error": str(e),
            }

    @staticmethod
    def _account(request: dict[str, Any]) -> str:
        username = request.get("username")
        if not username:
            raise ValueError("username is required")
        return normalize_username(username)

    async def _handle_ping(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "version": __version__}

    async def _handle_health(self, request: dict[str, Any]) -> dict[str, Any]:
        return {
            "status": "healthy",
            "database": "connected" if self._app.db else "disabled",
            "pending_duels": self._app.duel_alarms.pending_count() if self._app.duel_alarms else 0,
            "uptime_seconds": self._app.uptime_seconds,
        }

    async def _handle_reload(self, request: dict[str, Any]) -> dict[str, Any]:
        config = self._app.reload_config()
        return {"reloaded": True, "shop_items": len(config.shop.items)}

    async def _handle_balance_get(self, request: dict[str, Any]) -> dict[str, Any]:
        account = self._account(request)
        return {"username": account, "balance": await self._app.ledger.get_balance(account)}

    async def _handle_freespins_get(self, request: dict[str, Any]) -> dict[str, Any]:
        account = self._account(request)
        entries = await self._app.free_spins.get(account)
        return {
            "username": account,
            "total": FreeSpinQueue.total(entries),
            "entries": FreeSpinQueue.dump(entries),
        }

    async def _handle_purchases_get(self, request: dict[str, Any]) -> dict[str, Any]:
        account = self._account(request)
        item = request.get("item")
        if not item:
            raise ValueError("item is required")
        return {
            "username": account,
            "item": item,
            "week_start": self._app.limiter.current_week(),
            "count": await self._app.limiter.get_count(account, item),
        }

    _HANDLER_MAP: dict[str, Any] = {
        "system.ping": _handle_ping,
        "system.health": _handle_health,
        "system.reload": _handle_reload,
        "balance.get": _handle_balance_get,
        "freespins.get": _handle_freespins_get,
        "purchases.get": _handle_purchases_get,
    }
