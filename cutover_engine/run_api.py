# cutover_engine/run_api.py
"""Run the HTTP API; finishes interrupted deployments on startup."""

import logging

import uvicorn

from cutover_engine.config import settings
from cutover_engine.container import get_orchestrator

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    logger.info("=" * 80)
    logger.info("🚀 CUTOVER ENGINE API")
    logger.info("=" * 80)
    logger.info(f"Listening on {settings.api_host}:{settings.api_port}")
    logger.info(f"Lease Duration: {settings.lease_seconds}s")
    logger.info(f"Health Timeout: {settings.health_timeout_seconds}s")
    logger.info("=" * 80)

    orchestrator = get_orchestrator()

    recovered = orchestrator.recover_all()
    for record in recovered:
        logger.info(
            f"Recovered {record.resource_id}/{record.deployment_id}: {record.state.value}"
        )

    try:
        # uvicorn handles SIGINT/SIGTERM itself
        uvicorn.run(
            "cutover_engine.api.main:app",
            host=settings.api_host,
            port=settings.api_port,
        )
    finally:
        logger.info("🛑 Shutting down orchestrator...")
        orchestrator.shutdown(cancel=True, timeout=settings.stop_timeout_seconds)


if __name__ == "__main__":
    main()
