"""
FastAPI REST endpoint for the workflow engine.
Can be run with: uvicorn p2p_workflow.api:create_app --factory --reload
"""

from typing import Any, Dict, Optional

from fastapi import Body, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from p2p_workflow import __version__
from p2p_workflow.config import get_config
from p2p_workflow.dispatcher import WorkflowDispatcher
from p2p_workflow.main import build_dispatcher


config = get_config()


def create_app(dispatcher: Optional[WorkflowDispatcher] = None) -> FastAPI:
    """Build the API around a dispatcher (a fresh in-memory one by default)."""
    dispatcher = dispatcher or build_dispatcher(config)

    app = FastAPI(
        title="P2P Workflow Engine API",
        description="Procure-to-pay transaction workflow engine",
        version=__version__,
    )
    app.state.dispatcher = dispatcher

    @app.post("/dispatch")
    async def dispatch_endpoint(request: Any = Body(...)):
        """
        Route one action request.

        The HTTP status mirrors the response's ``status_code``.
        """
        response = await dispatcher.dispatch(request)
        return JSONResponse(
            content=jsonable_encoder(response.as_payload()),
            status_code=response.status_code,
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    @app.get("/config")
    async def get_config_endpoint() -> Dict[str, Any]:
        """Get current thresholds (sanitized)."""
        settings = dispatcher.config
        return {
            "approval_due_hours": settings.APPROVAL_DUE_HOURS,
            "auto_approve_limit": settings.AUTO_APPROVE_LIMIT,
            "approval_levels": [
                {"level": level, "ceiling": ceiling} for level, ceiling in settings.APPROVAL_LEVELS
            ],
            "match_amount_tolerance": settings.MATCH_AMOUNT_TOLERANCE,
            "match_quantity_tolerance": settings.MATCH_QUANTITY_TOLERANCE,
            "batch_concurrency": settings.BATCH_CONCURRENCY,
            "gateway_timeout_seconds": settings.GATEWAY_TIMEOUT_SECONDS,
            "anomaly_period_days": settings.ANOMALY_PERIOD_DAYS,
            "maverick_threshold": settings.MAVERICK_THRESHOLD,
            "strict_side_effects": sorted(settings.STRICT_SIDE_EFFECTS),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(),
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.LOG_LEVEL.lower(),
    )
