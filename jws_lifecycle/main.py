"""
JWS lifecycle host. Builds the controller at startup, runs the maintenance scheduler in the
background and serves the current active token to readers.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request

from jws_lifecycle.config import Settings, get_settings
from jws_lifecycle.keys import load_or_create_signing_key
from jws_lifecycle.lifecycle import LifecycleController
from jws_lifecycle.scheduler import MaintenanceScheduler
from jws_lifecycle.signer import JwsSigner
from jws_lifecycle.token_store import create_token_store

logger = logging.getLogger(__name__)


def build_controller(settings: Settings, signer: JwsSigner) -> LifecycleController:
    store = create_token_store(settings.persistence_path, settings.database_url)
    issuer = settings.issuer
    return LifecycleController(
        signer,
        store,
        ttl=settings.ttl,
        rotation_period=settings.rotation_period,
        payload_provider=lambda: {"iss": issuer},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, load signing key, bootstrap tokens and start the scheduler; stop it on shutdown."""
    settings = get_settings()
    signer = JwsSigner(load_or_create_signing_key(settings.signing_key_path))
    controller = build_controller(settings, signer)
    controller.bootstrap()
    scheduler = MaintenanceScheduler(
        controller.maintain,
        settings.maintenance_interval_seconds,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
    )
    app.state.signer = signer
    app.state.controller = controller
    app.state.scheduler = scheduler
    scheduler.start()
    try:
        yield
    finally:
        scheduler.stop()


app = FastAPI(title="JWS Lifecycle", version="0.1.0", lifespan=lifespan)


def get_controller(request: Request) -> LifecycleController:
    return request.app.state.controller


@app.get("/health")
def health(controller: LifecycleController = Depends(get_controller)):
    """Health check endpoint. Reports degraded while no token has been signed."""
    return {
        "status": "degraded" if controller.is_degraded() else "ok",
        "service": "jws_lifecycle",
    }


@app.get("/api/jws")
def current_jws(controller: LifecycleController = Depends(get_controller)):
    """Current active token. Always answers, with the last known-good token if maintenance is failing."""
    return controller.get_current_active_token().to_dict()


@app.get("/api/jws/status")
def jws_status(controller: LifecycleController = Depends(get_controller)):
    """Active/passive token details for diagnostics. Tokens are truncated."""
    return controller.status()


@app.get("/.well-known/jwks.json")
def jwks_json(request: Request):
    """JSON Web Key Set so consumers can verify issued tokens."""
    return request.app.state.signer.jwks()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "jws_lifecycle.main:app",
        host="127.0.0.1",
        port=8080,
    )
