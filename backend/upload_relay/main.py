"""Upload Relay Application.

Accepts user uploads over HTTP, validates them against per-category
policies, stages them on local disk and forwards them to remote object
storage (Cloudinary by default, S3 optionally). The local copy is always
deleted once the remote transfer resolves.

Modules:
    - uploads: validation, staging, transfer, cleanup and orchestration
    - remote: remote store providers
    - config: YAML settings and secrets

Run with ``uvicorn upload_relay.main:app``.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .config import AppConfig, get_config
from .remote.factory import build_remote_store
from .remote.provider import RemoteStore
from .uploads.cleanup import CleanupCoordinator
from .uploads.errors import UploadError
from .uploads.orchestrator import UploadOrchestrator
from .uploads.router import request_limits, router as uploads_router, upload_error_handler
from .uploads.stager import LocalStager
from .uploads.transfer import RemoteTransferer
from .uploads.transport import UploadSizeLimitMiddleware

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, including
# x-amz-security-token. urllib3 logs every connection the SDKs open.
for _noisy in (
    "botocore",
    "boto3",
    "s3transfer",
    "urllib3",
    "urllib3.connectionpool",
    "cloudinary",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    remote_store: Optional[RemoteStore] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Injected configuration; loaded from YAML at startup when omitted.
        remote_store: Injected remote store; built from config when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        cfg = config or get_config()

        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, cfg.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", cfg.logging.level.upper())

        stager = LocalStager(cfg.staging.root_dir, chunk_size=cfg.staging.chunk_size)
        stager.ensure_directories(
            policy.staging_subdir for policy in cfg.policies.values() if policy.staging_subdir
        )

        store = remote_store or build_remote_store(cfg)
        cleanup = CleanupCoordinator()

        app.state.config = cfg
        app.state.cleanup = cleanup
        app.state.orchestrator = UploadOrchestrator(
            stager=stager,
            transferer=RemoteTransferer(store),
            cleanup=cleanup,
            max_retries=cfg.remote.max_retries,
        )
        app.state.upload_limits = request_limits(cfg)

        logger.info(
            "Upload relay ready: staging=%s remote=%s retries=%d",
            stager.root_dir, store.name, cfg.remote.max_retries,
        )

        yield  # Application runs here

        # Shutdown
        if cleanup.failures:
            logger.warning(
                "%d staged file(s) could not be removed during this run", len(cleanup.failures)
            )
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Upload Relay API",
        description="Validates uploads, stages them locally and forwards them to remote storage",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(UploadSizeLimitMiddleware)
    app.add_exception_handler(UploadError, upload_error_handler)
    app.include_router(uploads_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
