import logging
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.datastructures import FormData
from starlette.formparsers import FormParser

from config import APP_VERSION, MAX_LOG_FILE_SIZE, AppConfig, is_ip, load_config, resolve_log_path
from models import HealthResponse, VersionResponse
from ratelimit import RateLimiter
from registry import ServerRegistry

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)

MAX_REPORT_BODY = 1024  # 1KB

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}
NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

router = APIRouter()


def get_registry(request: Request) -> ServerRegistry:
    return request.app.state.registry


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


async def read_limited_body(request: Request, limit: int) -> Optional[bytes]:
    """Read at most ``limit`` bytes of the body; None if there is more"""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        return None

    body = b""
    async for chunk in request.stream():
        body += chunk
        if len(body) > limit:
            return None
    return body


async def _replay(body: bytes):
    yield body
    yield b""


async def parse_form(request: Request, body: bytes) -> FormData:
    """Decode a url-encoded form from an already read body"""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type != "application/x-www-form-urlencoded":
        return FormData()
    return await FormParser(request.headers, _replay(body)).parse()


def configure_file_logging(config: AppConfig) -> Optional[logging.Handler]:
    """Also write the log to the configured file, if enabled"""
    if not config.log_enabled or not config.log_file:
        return None

    try:
        log_path = resolve_log_path(config.log_file, config.base_dir)
    except ValueError as e:
        logger.error(f"Error validating log file path: {e}, continuing with console logging only")
        return None

    try:
        handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=1,
            encoding="utf-8",
        )
    except OSError as e:
        logger.error(f"Error opening log file: {e}, continuing with console logging only")
        return None

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    logger.info("Logging to file enabled")
    return handler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    registry: ServerRegistry = app.state.registry
    config: AppConfig = app.state.config

    # Startup
    logger.info("Starting server directory...")
    registry.start()
    logger.info(f"Listening port: {config.port}")
    logger.info(f"Stale timeout: {config.stale_timeout}s")
    logger.info(f"Sweep interval: {registry.sweep_interval}s")
    logger.info(f"Official servers: {len(config.official_servers)}")

    yield

    # Shutdown
    logger.info("Shutting down server directory...")
    await registry.stop()


@router.post("/report.php")
async def report_server(
    request: Request,
    registry: ServerRegistry = Depends(get_registry),
    config: AppConfig = Depends(get_config),
):
    """Record an announcement from a game server"""
    if request.headers.get("user-agent") != config.allowed_user_agent:
        raise HTTPException(status_code=403, detail="Forbidden")

    body = await read_limited_body(request, MAX_REPORT_BODY)
    if body is None:
        raise HTTPException(status_code=400, detail="Bad Request")

    form = await parse_form(request, body)
    port_str = form.get("port") or request.query_params.get("port")
    if not port_str:
        raise HTTPException(status_code=400, detail="Missing port parameter")

    # Plain ASCII digits only
    if not isinstance(port_str, str) or not (port_str.isascii() and port_str.isdigit()):
        raise HTTPException(status_code=400, detail="Invalid port")
    port = int(port_str)
    if port < 1024 or port > 65535:
        raise HTTPException(status_code=400, detail="Invalid port")

    ip = request.client.host if request.client else None
    if not ip or ip in config.blacklist:
        # Silent drop for blacklisted IPs
        return Response(status_code=200)

    if not is_ip(ip):
        raise HTTPException(status_code=400, detail="Invalid IP address")

    logger.info(f"Received report from {ip}:{port}")
    registry.report_host(ip, port)
    return Response(status_code=200)


@router.get("/servers.txt", response_class=PlainTextResponse)
async def list_servers(registry: ServerRegistry = Depends(get_registry)):
    """Active servers, one address per line"""
    return PlainTextResponse("\n".join(registry.snapshot()), headers=NO_CACHE_HEADERS)


@router.get("/official.txt", response_class=PlainTextResponse)
async def list_official_servers(registry: ServerRegistry = Depends(get_registry)):
    """Official servers only"""
    return PlainTextResponse("\n".join(registry.official_servers()), headers=NO_CACHE_HEADERS)


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, response: Response, registry: ServerRegistry = Depends(get_registry)):
    """Health check endpoint"""
    response.headers.update(NO_CACHE_HEADERS)
    now = time.time()
    return HealthResponse(
        status="ok",
        timestamp=int(now),
        uptime=now - request.app.state.started_at,
        active_servers=len(registry.snapshot()),
    )


@router.get("/version", response_model=VersionResponse)
async def version(response: Response):
    response.headers.update(NO_CACHE_HEADERS)
    return VersionResponse()


def create_app(
    config: Optional[AppConfig] = None,
    registry: Optional[ServerRegistry] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the directory application around one registry"""
    if config is None:
        config = AppConfig()
    # An empty registry is falsy, so compare against None
    if registry is None:
        registry = ServerRegistry(config.registry_config())
    limiter = rate_limiter if rate_limiter is not None else RateLimiter()

    app = FastAPI(
        title="Server Directory",
        description="Live list of announced game servers",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = registry
    app.state.rate_limiter = limiter
    app.state.started_at = time.time()

    @app.middleware("http")
    async def security_middleware(request: Request, call_next):
        """Security headers and per-IP rate limiting"""
        client_ip = request.client.host if request.client else None
        if not client_ip:
            response = JSONResponse(status_code=400, content={"detail": "Invalid request"})
        elif not limiter.allow(client_ip):
            response = JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})
        else:
            response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response

    app.include_router(router)
    return app


def run():
    """Load the configuration and serve until interrupted"""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    config = load_config()
    configure_file_logging(config)

    logger.info(f"Starting server on port {config.port}...")
    uvicorn.run(
        create_app(config),
        host="0.0.0.0",
        port=config.port,
        log_level="info",
        timeout_keep_alive=60,
        timeout_graceful_shutdown=30,
        h11_max_incomplete_event_size=1024 * 1024,
    )
    logger.info("Server exited")


if __name__ == "__main__":
    run()
