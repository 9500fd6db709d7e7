"""
Main entry point for the automation engine service.

Loads configuration, opens the state store, starts the engine and the HTTP
server, and handles shutdown signals.
"""

import asyncio
import json
import logging
import os
import signal
import sys
from functools import partial
from pathlib import Path
from typing import Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from core.blueprint import Blueprint
from core.config import ConfigLoader, EngineConfig
from core.errors import EngineError
from core.state import StateManager
from orchestrator.engine import AutomationEngine
from platforms.catalog import PlatformCatalog


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()

_json_response = partial(web.json_response, dumps=partial(json.dumps, default=str))


class EngineServer:
    """HTTP surface: health, status and run management."""

    def __init__(self, engine: AutomationEngine, port: int = 8080):
        self.engine = engine
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_post("/runs", self._start_run_handler)
        app.router.add_get("/runs/{run_id}", self._get_run_handler)
        app.router.add_post("/runs/{run_id}/cancel", self._cancel_run_handler)
        app.router.add_post("/breakers/{integration}/reset", self._reset_breaker_handler)
        return app

    async def start(self) -> None:
        """Start the server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()

        logger.info("engine_server_started", port=self.port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            logger.info("engine_server_stopped")

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Basic health check - is the process alive."""
        return web.json_response({"status": "healthy"})

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Engine status with registry snapshot."""
        return _json_response(self.engine.get_status())

    async def _start_run_handler(self, request: web.Request) -> web.Response:
        """
        Start a run from an inline blueprint.

        Body: ``{"blueprint": {...}, "user_id", "automation_id", "trigger_data",
        "wait"}``. With ``wait`` the response carries the execution result.
        """
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Request body must be JSON"}, status=400)

        if not isinstance(payload, dict) or not isinstance(payload.get("blueprint"), dict):
            return web.json_response({"error": "Missing blueprint"}, status=400)

        trigger_data = payload.get("trigger_data")
        if trigger_data is not None and not isinstance(trigger_data, dict):
            return web.json_response({"error": "trigger_data must be an object"}, status=400)

        try:
            blueprint = Blueprint.from_dict(payload["blueprint"])
            if blueprint.platforms:
                self.engine.catalog.merged_with(blueprint.platforms)
        except EngineError as e:
            return _json_response({"error": e.message, "details": e.to_dict()}, status=400)

        kwargs = {
            "user_id": payload.get("user_id"),
            "automation_id": payload.get("automation_id"),
            "trigger_data": trigger_data,
        }

        if payload.get("wait"):
            result = await self.engine.run(blueprint, **kwargs)
            return _json_response(result.to_dict())

        run_id = await self.engine.start_run(blueprint, **kwargs)
        return web.json_response({"run_id": run_id, "status": "running"}, status=202)

    async def _get_run_handler(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        if self.engine.state is None:
            return web.json_response({"error": "No run store configured"}, status=503)

        record = await self.engine.state.get_run(run_id)
        if record is None:
            return web.json_response({"error": f"Run not found: {run_id}"}, status=404)
        return _json_response(record.to_dict())

    async def _cancel_run_handler(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        if not self.engine.cancel_run(run_id, reason="Cancelled via API"):
            return web.json_response({"error": f"Run not active: {run_id}"}, status=409)
        return web.json_response({"run_id": run_id, "cancelled": True})

    async def _reset_breaker_handler(self, request: web.Request) -> web.Response:
        """Force an integration's circuit breaker back to closed."""
        integration = request.match_info["integration"]
        if not await self.engine.registry.reset_breaker(integration):
            return web.json_response({"error": f"No circuit breaker for {integration}"}, status=404)
        logger.info("circuit_breaker_reset_via_api", integration=integration)
        return web.json_response({"integration": integration.lower(), "state": "closed"})


class Application:
    """Main application container."""

    def __init__(self):
        self.config: Optional[EngineConfig] = None
        self.state: Optional[StateManager] = None
        self.engine: Optional[AutomationEngine] = None
        self.server: Optional[EngineServer] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        logger.info("application_starting")

        loader = ConfigLoader()
        config_path = os.getenv("CONFIG_PATH", "./config/engine.yaml")
        if os.path.exists(config_path):
            self.config = loader.load_engine_config(config_path)
        else:
            logger.info("engine_config_defaults", reason="config file not found", path=config_path)
            self.config = EngineConfig()

        data_dir = os.getenv("DATA_DIR", self.config.data_directory)
        self.state = StateManager(str(Path(data_dir) / "state.db"))
        await self.state.initialize()

        catalog = PlatformCatalog()
        catalog_path = os.getenv("CATALOG_PATH", self.config.catalog_path or "")
        if catalog_path and os.path.exists(catalog_path):
            catalog = PlatformCatalog.load(catalog_path, loader)
            logger.info("platform_catalog_loaded", path=catalog_path, platforms=len(catalog))

        self.engine = AutomationEngine(self.config, state=self.state, catalog=catalog)

        port = int(os.getenv("HEALTH_PORT", "8080"))
        self.server = EngineServer(self.engine, port=port)
        await self.server.start()

        logger.info("application_started", config_hash=self.config.config_hash())

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        if self.server:
            await self.server.stop()

        if self.engine:
            await self.engine.shutdown()

        if self.state:
            await self.state.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    load_dotenv()
    configure_logging()

    app = Application()

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception:
        logger.exception("application_error")
        sys.exit(1)
    finally:
        await app.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
