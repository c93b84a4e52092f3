# cutover_engine/run_deploy.py
"""
One-shot deploy: move a resource to a version and exit.

Exit codes: 0 committed, 2 rolled back, 3 failed (operator needed),
4 circuit open, 1 anything else.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from cutover_engine.config import settings
from cutover_engine.container import get_orchestrator
from cutover_engine.core.errors import CutoverError
from cutover_engine.core.factory import DeploymentRequestFactory, VersionFactory
from cutover_engine.orchestrator.cutover_orchestrator import EXIT_ERROR, exit_code_for
from cutover_engine.registry.service import TagFile, build_image_uri

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m cutover_engine.run_deploy",
        description="Cut a singleton resource over to a new version.",
    )
    parser.add_argument("resource_id", help="Exclusive resource to deploy, e.g. clickhouse")
    parser.add_argument(
        "--version",
        help=f"Version identifier; defaults to the tag in {settings.image_tag_file}",
    )
    parser.add_argument("--digest", help="Artifact digest (sha256:...) when registering")
    parser.add_argument("--image-uri", help="Image URI when registering")
    parser.add_argument(
        "--register",
        action="store_true",
        help="Register the version before deploying",
    )
    parser.add_argument("--idempotency-key", help="Reuse a key to make retries safe")
    parser.add_argument(
        "--rollback",
        action="store_true",
        help="Deploy the previously committed version instead",
    )
    parser.add_argument(
        "--recover",
        action="store_true",
        help="Finish an interrupted deployment before anything else",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    orchestrator = get_orchestrator()

    try:
        if args.recover:
            recovered = orchestrator.recover(args.resource_id)
            if recovered is not None:
                logger.info(
                    f"Recovered {recovered.deployment_id}: {recovered.state.value} "
                    f"({recovered.reason})"
                )

        if args.rollback:
            request = orchestrator.rollback_request(args.resource_id, args.idempotency_key)
        else:
            version = args.version
            register = args.register

            if version is None:
                version = TagFile(settings.image_tag_file).read()
                if version is None:
                    logger.error(f"No --version given and {settings.image_tag_file} is empty")
                    return EXIT_ERROR
                register = True

            if register:
                image_uri = args.image_uri
                if image_uri is None and settings.image_registry:
                    image_uri = build_image_uri(
                        settings.image_registry, settings.image_repository, version
                    )
                orchestrator.registry.register(
                    VersionFactory.create(
                        identifier=version,
                        digest=args.digest,
                        image_uri=image_uri,
                    )
                )

            request = DeploymentRequestFactory.create(
                resource_id=args.resource_id,
                target_version=version,
                idempotency_key=args.idempotency_key,
            )

        logger.info("=" * 80)
        logger.info(f"🚀 DEPLOY {request.resource_id} -> {request.target_version}")
        logger.info(f"Idempotency key: {request.idempotency_key}")
        logger.info("=" * 80)

        handle = orchestrator.submit(request)

        def signal_handler(sig, frame):
            """Cancel the cutover; it ends ROLLED_BACK unless already committed."""
            logger.info("🛑 Cancelling deployment...")
            handle.cancel()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        record = handle.wait()

    except CutoverError as e:
        logger.error(f"❌ {type(e).__name__}: {e}")
        return exit_code_for(e)

    finally:
        orchestrator.shutdown(cancel=False)

    logger.info(f"Deployment {record.deployment_id} finished {record.state.value}: {record.reason}")
    for transition in record.transitions:
        logger.info(
            f"  {transition.timestamp.isoformat()} {transition.from_state.value} -> "
            f"{transition.to_state.value} {transition.reason}"
        )

    return exit_code_for(record)


if __name__ == "__main__":
    sys.exit(main())
