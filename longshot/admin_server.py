"""Administrative trigger surface, health check and Prometheus metrics.

Routes:
    POST /admin/close             close the last ended window (or {"date": ...})
    POST /admin/payouts/drain     attempt all PENDING payouts
    POST /admin/payouts/requeue   FAILED -> PENDING (all, or {"date": ...})
    GET  /health                  liveness, no credential
    GET  /metrics                 Prometheus text, no credential

Admin routes require the shared secret in the ``X-Admin-Secret`` header.
An empty configured secret rejects every admin call.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import TYPE_CHECKING, Awaitable, Callable

from aiohttp import web

from . import __version__
from .errors import (
    AccountNotFound,
    ClientError,
    GameError,
    IdempotencyError,
    ResourceError,
    Unauthenticated,
    UnknownWindow,
)
from .utils import now_utc

if TYPE_CHECKING:
    from .config import AdminConfig
    from .payout_processor import PayoutProcessor
    from .tournament import TournamentScheduler

SECRET_HEADER = "X-Admin-Secret"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def status_for(error: GameError) -> int:
    """HTTP status for a domain error."""
    if isinstance(error, Unauthenticated):
        return 401
    if isinstance(error, (AccountNotFound, UnknownWindow)):
        return 404
    if isinstance(error, IdempotencyError):
        return 409
    if isinstance(error, ResourceError):
        return 429 if error.error_code == "COOLDOWN" else 402
    if isinstance(error, ClientError):
        return 400
    return 502 if error.retryable else 500


class AdminServer:
    """aiohttp server for the scheduled close/drain triggers."""

    def __init__(
        self,
        config: AdminConfig,
        tournament: TournamentScheduler,
        payout_processor: PayoutProcessor,
        logger: logging.Logger,
        counters: Callable[[], dict[str, float]] | None = None,
    ) -> None:
        self._config = config
        self._tournament = tournament
        self._payouts = payout_processor
        self._logger = logger
        self._counters = counters or (lambda: {})
        self._runner: web.AppRunner | None = None
        self.requests_rejected = 0

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._error_middleware])
        app.router.add_get("/health", self._health)
        app.router.add_get("/metrics", self._metrics)
        app.router.add_post("/admin/close", self._guarded(self._close))
        app.router.add_post("/admin/payouts/drain", self._guarded(self._drain))
        app.router.add_post("/admin/payouts/requeue", self._guarded(self._requeue))
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        self._logger.info("Admin server listening on %s:%d", self._config.host, self._config.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ══════════════════════════════════════════════════════════
    #  Middleware & auth
    # ══════════════════════════════════════════════════════════

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except GameError as e:
            return web.json_response(e.to_dict(), status=status_for(e))
        except web.HTTPException:
            raise
        except Exception:
            self._logger.exception("Admin request %s %s failed", request.method, request.path)
            return web.json_response(
                {"error": "INTERNAL", "message": "Internal error."}, status=500,
            )

    def _authorized(self, request: web.Request) -> bool:
        expected = self._config.secret
        supplied = request.headers.get(SECRET_HEADER, "")
        if not expected or not supplied:
            return False
        return secrets.compare_digest(supplied.encode(), expected.encode())

    def _guarded(self, handler: Handler) -> Handler:
        async def wrapper(request: web.Request) -> web.StreamResponse:
            if not self._authorized(request):
                self.requests_rejected += 1
                self._logger.warning("Rejected admin call to %s from %s", request.path, request.remote)
                return web.json_response(
                    {"error": "FORBIDDEN", "message": "Invalid admin credential."}, status=401,
                )
            return await handler(request)

        return wrapper

    @staticmethod
    async def _json_body(request: web.Request) -> dict:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise web.HTTPBadRequest(text="Body must be JSON.") from e
        return body if isinstance(body, dict) else {}

    # ══════════════════════════════════════════════════════════
    #  Handlers
    # ══════════════════════════════════════════════════════════

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "version": __version__, "time": now_utc().isoformat()})

    async def _metrics(self, request: web.Request) -> web.Response:
        lines = [f"longshot_{name} {value}" for name, value in sorted(self._counters().items())]
        lines.append(f"longshot_admin_requests_rejected_total {self.requests_rejected}")
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def _close(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        result = await self._tournament.close_window(body.get("date"))
        return web.json_response({"ok": True, "run": result.to_dict()})

    async def _drain(self, request: web.Request) -> web.Response:
        report = await self._payouts.drain()
        return web.json_response({"ok": True, **report.to_dict()})

    async def _requeue(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        count = await self._payouts.requeue_failed(body.get("date"))
        return web.json_response({"ok": True, "requeued": count})
