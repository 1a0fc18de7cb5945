"""FastAPI application exposing the observation sync API."""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Config
from ..exceptions import ClientInputError, RecordNotFoundError, StoreError
from ..store import RecordStore
from ..sync import ReconciliationService

logger = logging.getLogger(__name__)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise ClientInputError("Request body must be valid JSON")


def create_app(config: Config, store: RecordStore) -> FastAPI:
    """Create the FastAPI sync server.

    Args:
        config: Application configuration.
        store: Connected RecordStore backing the API.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Fieldsync API",
        description="Reconciliation server for offline field observations",
        version="0.1.0",
    )

    reconciler = ReconciliationService(store)

    # Store references for route handlers
    app.state.config = config
    app.state.store = store
    app.state.reconciler = reconciler

    # ==================== Error mapping ====================

    @app.exception_handler(ClientInputError)
    async def client_input_error(request: Request, exc: ClientInputError):
        return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})

    @app.exception_handler(RecordNotFoundError)
    async def not_found_error(request: Request, exc: RecordNotFoundError):
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "Observation not found"},
        )

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error(f"Store error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Server error", "error": str(exc)},
        )

    # ==================== Routes ====================

    @app.get("/")
    async def index() -> dict[str, Any]:
        """Liveness probe."""
        return {
            "message": "Fieldsync API - server running",
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/health")
    async def api_health():
        """Check that the record store answers."""
        try:
            store.ping()
        except StoreError as e:
            return JSONResponse(
                status_code=500,
                content={"status": "ERROR", "message": str(e)},
            )

        return {
            "status": "OK",
            "message": "Record store connected",
            "database": config.store.collection,
        }

    @app.post("/api/observations")
    async def create_observation(request: Request) -> dict[str, Any]:
        """Create or replace one observation."""
        body = await _read_json(request)
        result = reconciler.upsert_one(body)

        return {
            "success": True,
            "message": "Observation saved",
            "id": result.identity,
            "operation": result.operation.value,
        }

    @app.post("/api/observations/batch")
    async def sync_batch(request: Request) -> dict[str, Any]:
        """Reconcile a batch of observations with per-record isolation."""
        body = await _read_json(request)
        observations = body.get("observations") if isinstance(body, dict) else None
        result = reconciler.reconcile(observations)

        return {
            "success": True,
            "message": "Batch synchronization finished",
            "results": result.to_dict(),
        }

    @app.get("/api/observations")
    async def list_observations() -> dict[str, Any]:
        """All observations, newest date first."""
        observations = store.find_all()
        return {
            "success": True,
            "count": len(observations),
            "observations": [o.to_dict() for o in observations],
        }

    @app.get("/api/observations/{identity}")
    async def get_observation(identity: str) -> dict[str, Any]:
        observation = store.find_by_identity(identity)
        return {"success": True, "observation": observation.to_dict()}

    @app.delete("/api/observations/{identity}")
    async def delete_observation(identity: str) -> dict[str, Any]:
        store.delete_by_identity(identity)
        logger.info(f"Observation deleted: {identity}")
        return {"success": True, "message": "Observation deleted"}

    return app
