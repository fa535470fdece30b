"""Run the sync server under uvicorn."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storyloom.backends import HttpGenerationBackend
from storyloom.bindings import create_sync_app
from storyloom.config import EngineConfig
from storyloom.sessions import LoggingTelemetrySink, SessionManager


class CLIError(Exception):
    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


@dataclass(slots=True)
class ServeResult:
    url: str


def run_serve(
    *,
    host: str,
    port: int,
    backend_url: str,
    credential_header: str = "Authorization",
    credential_prefix: str = "Bearer ",
    log_level: str = "info",
) -> ServeResult:
    try:
        import uvicorn
    except ModuleNotFoundError as exc:  # pragma: no cover - optional extra
        raise CLIError("uvicorn is not installed.", hint="Install with `pip install storyloom[server]`.") from exc

    try:
        config = EngineConfig.from_env()
    except ValueError as exc:
        raise CLIError(str(exc), hint="Check the STORYLOOM_* environment variables.") from exc

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    backend = HttpGenerationBackend(
        endpoint=backend_url,
        credential_header=credential_header,
        credential_prefix=credential_prefix,
    )
    manager = SessionManager(backend=backend, config=config, telemetry_sink=LoggingTelemetrySink())
    app = create_sync_app(manager)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=log_level.lower()))
    server.run()
    return ServeResult(url=f"http://{host}:{port}")


__all__ = ["CLIError", "ServeResult", "run_serve"]
