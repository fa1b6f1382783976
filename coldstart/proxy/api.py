from __future__ import annotations

from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response

from coldstart.config import Settings, settings as default_settings
from coldstart.core.logging import get_logger, setup_logging
from coldstart.proxy.auth import AdminTokenGuard
from coldstart.proxy.forwarder import RequestForwarder
from coldstart.shared import (
    ADMIN_PATH_PREFIX,
    ProxyFailure,
    SpawnFailure,
    StartTimeout,
)
from coldstart.supervisor.models import BackendStatusResponse, ProxyHealthResponse
from coldstart.supervisor.service import SupervisorRegistry

logger = get_logger(__name__)

_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(
    settings: Settings | None = None,
    registry: SupervisorRegistry | None = None,
    forwarder: RequestForwarder | None = None,
) -> FastAPI:
    settings = settings or default_settings
    setup_logging("coldstart", debug=settings.debug_mode)
    if registry is None:
        registry = SupervisorRegistry.from_configs(
            settings.backend_configs(),
            Path(settings.log_dir),
        )
    forwarder = forwarder or RequestForwarder()
    admin_auth = Depends(AdminTokenGuard(settings))

    application = FastAPI(title="Coldstart Proxy", version="0.1.0")
    application.state.registry = registry
    application.state.forwarder = forwarder

    @application.on_event("startup")
    async def on_startup() -> None:
        for supervisor in registry:
            logger.info(
                "Route %s -> %s backend (%s), started on demand",
                supervisor.config.path_prefix,
                supervisor.config.kind,
                supervisor.name,
            )

    @application.on_event("shutdown")
    async def on_shutdown() -> None:
        await registry.shutdown()
        await forwarder.aclose()

    @application.get(f"{ADMIN_PATH_PREFIX}/health", response_model=ProxyHealthResponse)
    async def health() -> ProxyHealthResponse:
        statuses = [supervisor.status() for supervisor in registry]
        return ProxyHealthResponse(
            status="ok",
            backends=len(statuses),
            ready=sum(1 for status in statuses if status.state == "ready"),
            backends_status=statuses,
        )

    @application.get(
        f"{ADMIN_PATH_PREFIX}/backends", response_model=list[BackendStatusResponse]
    )
    async def list_backends() -> list[BackendStatusResponse]:
        return [supervisor.status() for supervisor in registry]

    @application.post(
        f"{ADMIN_PATH_PREFIX}/backends/{{name}}/stop",
        response_model=BackendStatusResponse,
    )
    async def stop_backend(name: str, _auth: None = admin_auth) -> BackendStatusResponse:
        supervisor = registry.get(name)
        if supervisor is None:
            raise HTTPException(status_code=404, detail="Backend route not found")
        await supervisor.stop()
        return supervisor.status()

    @application.api_route("/{path:path}", methods=_PROXY_METHODS)
    async def proxy(request: Request, path: str) -> Response:
        supervisor = registry.match(request.url.path)
        if supervisor is None:
            raise HTTPException(status_code=404, detail="No backend route matches this path")

        try:
            address = await supervisor.ensure_ready()
        except StartTimeout as exc:
            raise HTTPException(
                status_code=503,
                detail=f"Backend unavailable: {exc}",
            ) from exc
        except SpawnFailure as exc:
            raise HTTPException(
                status_code=502,
                detail=f"Backend failed to start: {exc}",
            ) from exc

        try:
            response = await forwarder.forward(
                request,
                address,
                timeout=supervisor.config.request_timeout,
            )
        except ProxyFailure as exc:
            logger.warning("Proxy to backend %s failed: %s", supervisor.name, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        supervisor.touch()
        return response

    return application
