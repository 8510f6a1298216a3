import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from verifier.app.api.routes import router as verify_router
from verifier.app.core.config import get_settings
from verifier.app.coordinator.orchestrator import VerificationOrchestrator

logger = logging.getLogger("verifier.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("ic-verifier")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - One shared transport with bounded timeouts for every outbound call
    - No credential is fetched at startup (credentials are per call)
    """
    logger.info(
        "verifier_startup_begin",
        extra={
            "service": "ic-verifier",
            "version": get_app_version(),
        },
    )

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    try:
        settings = get_settings()
    except Exception:
        logger.exception("invalid_verifier_configuration")
        raise

    app.state.settings = settings

    # ------------------------------------------------------------------
    # Persistent HTTP client (storage, metadata, text extraction)
    # ------------------------------------------------------------------
    timeout = settings.request_timeout_seconds
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=timeout,
            connect=min(timeout, 2.0),
        ),
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
        ),
        headers={
            "User-Agent": f"ic-verifier/{get_app_version()}",
        },
    )

    app.state.orchestrator = VerificationOrchestrator.from_settings(
        settings,
        app.state.http_client,
    )

    logger.info(
        "verifier_startup_complete",
        extra={
            "region": settings.aws_region,
            "bucket": settings.storage_bucket,
            "credential_source": settings.credential_source,
        },
    )

    try:
        yield
    finally:
        logger.info("verifier_shutdown_begin")

        # Idempotent shutdown
        try:
            await app.state.http_client.aclose()
        except Exception:
            logger.warning("http_client_shutdown_failed")


def create_app() -> FastAPI:
    """
    Application factory for the IC verification service.
    """
    app = FastAPI(
        title="IC Verifier",
        description=(
            "Tenant identity card verification: transient upload, text "
            "extraction and field parsing. Images are deleted before the "
            "response is returned."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # CORS is enforced at the ingress layer
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(verify_router, prefix="/api")

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive.

        NOTE:
        - Does NOT fetch credentials
        - Does NOT call storage or text extraction
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "ic-verifier",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
            }
        )

    return app


app = create_app()
