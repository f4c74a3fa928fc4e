"""Tickstore - market tick ingestion into PostgreSQL"""

__version__ = "0.1.0"


def main() -> None:
    """Run the headless pipeline until it is signalled or the feed gives up"""
    import asyncio
    import logging
    import signal
    import sys

    from .config import TickstoreConfig, configure_logging
    from .pipeline import TickPipeline, FeedGivenUpError

    config = TickstoreConfig.from_env()
    configure_logging(config)
    logger = logging.getLogger("tickstore")

    logger.info(
        f"Tickstore {__version__}: {len(config.INSTRUMENTS)} instruments, "
        f"batch_size={config.BATCH_SIZE}, buffer_capacity={config.buffer_capacity}"
    )

    async def run_until_signalled():
        pipeline = TickPipeline.from_config(config)

        # SIGINT/SIGTERM cancel the run, whose cleanup drains the buffer
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)

        try:
            await pipeline.run()
        except asyncio.CancelledError:
            logger.info("Shutdown signal received")

    try:
        asyncio.run(run_until_signalled())
    except FeedGivenUpError as e:
        logger.critical(f"Exiting: {e}")
        sys.exit(1)


def serve() -> None:
    """Run the stats server with the pipeline in its lifespan"""
    import uvicorn

    from .config import TickstoreConfig

    config = TickstoreConfig.from_env()
    uvicorn.run(
        "tickstore.app:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
        reload=False
    )
