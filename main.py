"""
Travel planner entry point
Serves the itinerary and search API over HTTP
"""

import sys

import uvicorn
from loguru import logger

from travel_planner.api import create_app
from travel_planner.orchestrator import get_orchestrator
from travel_planner.settings import global_settings


def main() -> None:
    """Configure logging and run the API server"""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())

    logger.info("Starting travel planner...")
    orchestrator = get_orchestrator()
    for service_id in orchestrator.config.descriptors:
        logger.info(f"Dependency registered: {service_id}")

    app = create_app(orchestrator)
    uvicorn.run(
        app,
        host=global_settings.host,
        port=global_settings.port,
        log_level=global_settings.log_level.lower(),
    )
    logger.info("Travel planner stopped")


if __name__ == "__main__":
    main()
