"""
Starlette stats server running the tick pipeline in its lifespan.
"""

import json
import logging
import os
import signal
from contextlib import asynccontextmanager
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Callable

from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from . import __version__
from .config import TickstoreConfig, configure_logging
from .pipeline import TickPipeline

logger = logging.getLogger(__name__)

MAX_TICKS_LIMIT = 1000


def custom_json_response(data, status_code=200):
    """Create a response with custom serialization for Decimal and datetime objects"""
    def custom_encoder(obj):
        if isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        raise TypeError(repr(obj) + " is not JSON serializable")

    json_str = json.dumps(data, default=custom_encoder)
    return Response(json_str, media_type="application/json", status_code=status_code)


def terminate_process(message: str) -> None:
    """Ask the process to shut down so an external supervisor can restart it."""
    logger.critical(f"Tick feed gave up ({message}), terminating process")
    os.kill(os.getpid(), signal.SIGTERM)


def default_pipeline_factory(on_fatal: Callable[[str], None]) -> TickPipeline:
    config = TickstoreConfig.from_env()
    configure_logging(config)
    return TickPipeline.from_config(config, on_fatal=on_fatal)


async def health_check(request):
    """Liveness check"""
    return JSONResponse({
        "status": "healthy",
        "service": "tickstore",
        "version": __version__
    })


async def health_ready(request):
    """Ready while the feed is connected"""
    pipeline = request.app.state.pipeline
    connection = pipeline.supervisor.get_stats()

    if pipeline.is_running and pipeline.supervisor.status().connected:
        return custom_json_response({
            "status": "ready",
            "service": "tickstore",
            "connection": connection
        })

    return custom_json_response({
        "status": "not_ready",
        "service": "tickstore",
        "given_up": connection["given_up"],
        "connection": connection
    }, status_code=503)


async def get_stats(request):
    """Pipeline and database statistics"""
    pipeline = request.app.state.pipeline
    try:
        stats = pipeline.get_stats()
        stats["timestamp"] = datetime.now().isoformat()

        # Database errors are reported, not raised
        try:
            stats["database"] = await pipeline.database.get_db_stats()
        except Exception as db_error:
            stats["database"] = {"error": str(db_error)}

        return custom_json_response(stats)
    except Exception as e:
        logger.error(f"Error getting stats: {e}")
        return custom_json_response({"error": str(e)}, status_code=500)


async def get_instrument_ticks(request):
    """Most recent stored ticks for one instrument"""
    instrument_id = request.path_params['instrument_id']

    try:
        limit = int(request.query_params.get("limit", "100"))
    except ValueError:
        return custom_json_response({"error": "limit must be an integer"}, status_code=400)
    if not 1 <= limit <= MAX_TICKS_LIMIT:
        return custom_json_response(
            {"error": f"limit must be between 1 and {MAX_TICKS_LIMIT}"}, status_code=400
        )

    pipeline = request.app.state.pipeline
    try:
        ticks = await pipeline.database.get_recent_ticks(instrument_id, limit=limit)
        return custom_json_response({
            "instrument_id": instrument_id,
            "ticks": ticks,
            "count": len(ticks),
            "timestamp": datetime.now().isoformat()
        })
    except Exception as e:
        logger.error(f"Error getting ticks for instrument {instrument_id}: {e}")
        return custom_json_response({"error": str(e)}, status_code=500)


routes = [
    Route("/health", health_check, methods=["GET"]),
    Route("/health/ready", health_ready, methods=["GET"]),
    Route("/api/stats", get_stats, methods=["GET"]),
    Route("/api/instruments/{instrument_id:int}/ticks", get_instrument_ticks, methods=["GET"]),
]


def create_app(
    pipeline_factory: Optional[Callable[[Callable[[str], None]], TickPipeline]] = None,
    on_fatal: Callable[[str], None] = terminate_process,
) -> Starlette:
    """
    Build the stats server.

    The pipeline is created and started when the application starts and is
    drained and stopped when it shuts down.
    """
    factory = pipeline_factory or default_pipeline_factory

    @asynccontextmanager
    async def lifespan(app):
        logger.info("Starting tickstore server...")
        pipeline = factory(on_fatal)
        app.state.pipeline = pipeline
        await pipeline.start()
        logger.info("Tickstore server startup complete")
        try:
            yield
        finally:
            logger.info("Shutting down tickstore server...")
            await pipeline.stop()
            logger.info("Tickstore server shutdown complete")

    return Starlette(routes=routes, lifespan=lifespan)


app = create_app()
