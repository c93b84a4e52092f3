# cutover_engine/runner/docker_runner.py
"""Docker runner - runs the singleton worker as a local container."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from cutover_engine.core.errors import InstanceError, InstanceExited
from cutover_engine.core.models import Instance, InstanceState, utcnow
from cutover_engine.runner.base import InstanceRunner

logger = logging.getLogger(__name__)


class DockerInstanceRunner(InstanceRunner):
    """
    Starts one container per instance with the shared data directory mounted.

    The image comes from instance.metadata["image"] (set from the version's
    image URI) and falls back to "<image_repository>:<version>".
    """

    def __init__(
        self,
        *,
        image_repository: str,
        volumes: Optional[List[str]] = None,
        ports: Optional[Dict[str, int]] = None,
        environment: Optional[Dict[str, str]] = None,
        stop_timeout: int = 30,
        pull: bool = True,
        client=None,
    ):
        """
        Args:
            image_repository: e.g. "clickhouse/clickhouse-server"
            volumes: Volume mounts, e.g. ["/mnt/efs/clickhouse:/var/lib/clickhouse"]
            ports: Port mappings {'8123/tcp': 8123}
            environment: Environment variables
            stop_timeout: Seconds docker waits before SIGKILL on stop
            pull: Pull the image before creating the container
            client: docker client (defaults to docker.from_env())
        """
        self.image_repository = image_repository
        self.volumes = list(volumes or [])
        self.ports = dict(ports or {})
        self.environment = dict(environment or {})
        self.stop_timeout = stop_timeout
        self.pull = pull
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def image_for(self, instance: Instance) -> str:
        return instance.metadata.get("image") or f"{self.image_repository}:{instance.version}"

    def start(self, instance: Instance) -> Instance:
        image = self.image_for(instance)
        logger.info(f"[{instance.instance_id}] Starting container from {image}")

        try:
            if self.pull:
                self.client.images.pull(image)

            container_config: Dict[str, Any] = {
                "image": image,
                "name": instance.instance_id,
                "detach": True,
                "labels": {
                    "managed_by": "cutover_engine",
                    "resource_id": instance.resource_id,
                    "version": instance.version,
                },
                # The engine decides restarts, not the daemon
                "restart_policy": {"Name": "no"},
            }
            if self.environment:
                container_config["environment"] = self.environment
            if self.ports:
                container_config["ports"] = self.ports
            if self.volumes:
                container_config["volumes"] = self.volumes

            container = self.client.containers.create(**container_config)
            instance.external_id = container.id

            container.start()
            container.reload()
        except ImageNotFound as e:
            raise InstanceError(f"Image not found: {image}") from e
        except APIError as e:
            self._discard(instance)
            raise InstanceError(f"Docker error starting {instance.instance_id}: {e}") from e

        instance.state = InstanceState.STARTING
        instance.started_at = utcnow()
        instance.metadata["image"] = image
        instance.metadata.setdefault("host", self._container_ip(container) or "localhost")

        logger.info(f"[{instance.instance_id}] ✅ Container started: {container.id[:12]}")
        return instance

    def stop(self, instance: Instance) -> None:
        # Containers are named after the instance, so one created by a
        # process that died before recording its id is still found
        ref = instance.external_id or instance.instance_id

        logger.info(f"[{instance.instance_id}] Stopping container {ref[:12]}")
        try:
            container = self.client.containers.get(ref)
            container.stop(timeout=self.stop_timeout)
            container.remove()
        except NotFound:
            logger.info(f"[{instance.instance_id}] Container already gone")
        except APIError as e:
            raise InstanceError(f"Docker error stopping {instance.instance_id}: {e}") from e

        instance.state = InstanceState.STOPPED

    def _discard(self, instance: Instance) -> None:
        """Remove a container whose start failed halfway."""
        if not instance.external_id:
            return
        try:
            self.client.containers.get(instance.external_id).remove(force=True)
            logger.info(f"[{instance.instance_id}] Removed half-started container")
        except NotFound:
            pass
        except APIError as e:
            # stop() on rollback retries with the recorded id
            logger.error(f"[{instance.instance_id}] ❌ Could not remove container: {e}")

    def exec(self, instance: Instance, command: Sequence[str]) -> int:
        """Exit code of a command run inside the container (for health checks)."""
        container = self._running_container(instance)
        result = container.exec_run(list(command))
        return result.exit_code

    def exit_code(self, instance: Instance) -> Optional[int]:
        """None while running, the container's exit code once it stopped."""
        if not instance.external_id:
            return -1
        try:
            container = self.client.containers.get(instance.external_id)
        except NotFound:
            return -1
        if container.status in ("created", "running", "restarting"):
            return None
        return container.attrs.get("State", {}).get("ExitCode", -1)

    def _running_container(self, instance: Instance):
        try:
            container = self.client.containers.get(instance.external_id)
        except NotFound as e:
            raise InstanceExited(f"{instance.instance_id} container not found") from e

        if container.status == "exited":
            code = container.attrs.get("State", {}).get("ExitCode")
            raise InstanceExited(f"{instance.instance_id} exited with code {code}")
        return container

    @staticmethod
    def _container_ip(container) -> Optional[str]:
        networks = container.attrs.get("NetworkSettings", {}).get("Networks", {})
        if networks:
            return list(networks.values())[0].get("IPAddress") or None
        return None
