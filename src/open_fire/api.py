"""HTTP API: create and stop microVMs.

    GET  /healthz  -> 200 "OK"
    POST /create   -> 201 {"ip", "pid", "vmId"}
    POST /stop     -> 201 "VM with id: <id> has been stopped"

Errors are returned as {"error": "<message>"}: 422 for problems the caller
can fix, 500 for launch/runtime failures.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from open_fire import __version__
from open_fire._logging import get_logger
from open_fire.exceptions import ConfigValidationError, OpenFireError, ResourceNotFoundError, UnsupportedArchError
from open_fire.models import CreateVMRequest, CreateVMResponse, ErrorResponse, StopVMRequest
from open_fire.settings import Settings
from open_fire.vm_manager import VmManager

logger = get_logger(__name__)

_CLIENT_ERRORS = (ConfigValidationError, ResourceNotFoundError, UnsupportedArchError)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def status_for(exc: OpenFireError) -> int:
    """422 for caller-fixable errors, 500 for everything else."""
    return 422 if isinstance(exc, _CLIENT_ERRORS) else 500


def create_app(settings: Settings | None = None, manager: VmManager | None = None) -> FastAPI:
    """Build the application; the manager's live VMs are stopped on shutdown."""
    settings = settings or Settings()
    manager = manager or VmManager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("open-fire starting up", extra={"environment": settings.environment})
        async with manager:
            yield
        logger.info("open-fire shut down")

    app = FastAPI(title="open-fire", version=__version__, lifespan=lifespan)
    app.state.manager = manager

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(422, f"failed to read json body: {exc.errors()}")

    @app.exception_handler(OpenFireError)
    async def open_fire_error(request: Request, exc: OpenFireError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error": exc.message, "error_type": type(exc).__name__, **exc.context},
            )
        return _error(status_code, exc.message)

    @app.get("/healthz", response_class=PlainTextResponse)
    async def healthz() -> str:
        return "OK\n"

    @app.post("/create", status_code=201, response_model=CreateVMResponse, response_model_by_alias=True)
    async def create(request: CreateVMRequest) -> CreateVMResponse:
        vm = await manager.start_vm(request)
        return CreateVMResponse(ip=vm.ip, pid=vm.pid, vm_id=vm.vm_id)

    @app.post("/stop", status_code=201, response_class=PlainTextResponse)
    async def stop(request: StopVMRequest) -> Response:
        if not request.arch or request.pid == 0 or not request.vmm_id:
            return _error(
                422,
                f"missing required field, arch: {request.arch}, pid: {request.pid}, vmmid: {request.vmm_id}",
            )
        result = await manager.stop_vm(request)
        return PlainTextResponse(result + "\n", status_code=201)

    return app
