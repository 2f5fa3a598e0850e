import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from services.common.api import error_response, model_dump
from services.version_registry.config import (
    VersionApiConfig,
    VersionRegistryComponents,
    build_version_registry,
    load_version_api_config,
)
from services.version_registry.errors import ToolNotFoundError, VersionRegistryError
from services.version_registry.models import ConditionalResponse
from services.version_registry.service import QueryService

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

router = APIRouter(prefix=API_PREFIX)


def _query_service(request: Request) -> QueryService:
    return request.app.state.components.query_service


def _conditional_response(result: ConditionalResponse) -> Response:
    headers = {
        "Cache-Control": f"public, max-age={result.max_age}",
        "ETag": result.etag,
        "Vary": "Accept-Encoding",
    }
    if result.not_modified:
        return Response(status_code=304, headers=headers)
    return JSONResponse(content=result.body, headers=headers)


def _failure_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, VersionRegistryError):
        logger.error(f"Request failed with {exc.code}: {exc}")
        return JSONResponse(status_code=500, content=error_response(exc.code, str(exc)))
    logger.exception("Unexpected error while serving request")
    return JSONResponse(
        status_code=500,
        content=error_response("INTERNAL_ERROR", "Internal server error", {"reason": str(exc)}),
    )


@router.get("/tools")
def list_tools(request: Request, if_none_match: Optional[str] = Header(None)):
    try:
        result = _query_service(request).get_snapshot(if_none_match)
    except Exception as exc:
        return _failure_response(exc)
    return _conditional_response(result)


@router.get("/tools/{tool_id}")
def get_tool(request: Request, tool_id: str):
    try:
        tool = _query_service(request).get_tool(tool_id)
    except ToolNotFoundError as exc:
        return JSONResponse(
            status_code=404,
            content=error_response(exc.code, "Tool not found", {"id": exc.tool_id}),
        )
    except Exception as exc:
        return _failure_response(exc)
    return JSONResponse(content=model_dump(tool))


@router.get("/update")
def get_update_info(request: Request, if_none_match: Optional[str] = Header(None)):
    try:
        result = _query_service(request).get_update_info(if_none_match)
    except Exception as exc:
        return _failure_response(exc)
    return _conditional_response(result)


@router.get("/health")
def health(request: Request):
    try:
        view = _query_service(request).get_health()
    except Exception as exc:
        return _failure_response(exc)
    return JSONResponse(content=model_dump(view), headers={"Cache-Control": "no-store"})


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        content = error_response("NOT_FOUND", "Not found", {"path": request.url.path})
    else:
        content = error_response("HTTP_ERROR", str(exc.detail), {"path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


def create_app(
    config: Optional[VersionApiConfig] = None,
    *,
    components: Optional[VersionRegistryComponents] = None,
) -> FastAPI:
    """Build the version API.

    The background updater is started in the lifespan only when the config
    enables the scheduler; reads are served from whatever is on disk.
    """
    cfg = config or load_version_api_config()
    registry = components or build_version_registry(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.store.ensure_directory()
        if cfg.enable_scheduler:
            registry.updater.start()
        else:
            logger.info("Background refresh disabled; serving persisted snapshot only")
        yield
        if registry.updater.running:
            registry.updater.stop(wait=False)

    app = FastAPI(title="Version Registry", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.components = registry
    app.state.config = cfg
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.include_router(router)
    return app
