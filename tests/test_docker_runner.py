"""Test the Docker runner against a mocked docker client."""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from cutover_engine.core.errors import InstanceError, InstanceExited
from cutover_engine.core.models import Instance, InstanceState
from cutover_engine.runner.docker_runner import DockerInstanceRunner


@pytest.fixture
def client():
    client = MagicMock()
    container = client.containers.create.return_value
    container.id = "0123456789abcdef"
    container.attrs = {"NetworkSettings": {"Networks": {"bridge": {"IPAddress": "172.17.0.3"}}}}
    return client


@pytest.fixture
def docker_runner(client):
    return DockerInstanceRunner(
        image_repository="clickhouse/clickhouse-server",
        volumes=["/mnt/efs/clickhouse:/var/lib/clickhouse"],
        ports={"8123/tcp": 8123},
        stop_timeout=10,
        client=client,
    )


@pytest.fixture
def instance():
    return Instance.new("clickhouse", "24.3")


class TestDockerInstanceRunner:

    # -------------------------
    # START
    # -------------------------

    def test_start_creates_labelled_container(self, docker_runner, client, instance):
        started = docker_runner.start(instance)

        client.images.pull.assert_called_once_with("clickhouse/clickhouse-server:24.3")
        kwargs = client.containers.create.call_args.kwargs
        assert kwargs["name"] == instance.instance_id
        assert kwargs["labels"]["resource_id"] == "clickhouse"
        assert kwargs["restart_policy"] == {"Name": "no"}
        assert kwargs["volumes"] == ["/mnt/efs/clickhouse:/var/lib/clickhouse"]

        assert started.external_id == "0123456789abcdef"
        assert started.state == InstanceState.STARTING
        assert started.started_at is not None
        assert started.metadata["host"] == "172.17.0.3"

    def test_image_from_metadata_wins(self, docker_runner, client, instance):
        instance.metadata["image"] = "123.dkr.ecr.local/clickhouse:20250101-120000"

        docker_runner.start(instance)

        assert client.containers.create.call_args.kwargs["image"] == (
            "123.dkr.ecr.local/clickhouse:20250101-120000"
        )

    def test_missing_image(self, docker_runner, client, instance):
        client.images.pull.side_effect = ImageNotFound("nope")

        with pytest.raises(InstanceError):
            docker_runner.start(instance)

    def test_api_error_on_start(self, docker_runner, client, instance):
        client.containers.create.side_effect = APIError("daemon down")

        with pytest.raises(InstanceError):
            docker_runner.start(instance)

        assert instance.external_id is None
        client.containers.get.assert_not_called()

    def test_failed_reload_removes_running_container(self, docker_runner, client, instance):
        created = client.containers.create.return_value
        created.reload.side_effect = APIError("inspect failed")
        leftover = client.containers.get.return_value

        with pytest.raises(InstanceError):
            docker_runner.start(instance)

        assert instance.external_id == "0123456789abcdef"
        client.containers.get.assert_called_once_with("0123456789abcdef")
        leftover.remove.assert_called_once_with(force=True)

    def test_failed_start_can_still_be_stopped(self, docker_runner, client, instance):
        client.containers.create.return_value.start.side_effect = APIError("port in use")
        client.containers.get.return_value.remove.side_effect = [APIError("busy"), None]

        with pytest.raises(InstanceError):
            docker_runner.start(instance)

        docker_runner.stop(instance)

        container = client.containers.get.return_value
        container.stop.assert_called_once_with(timeout=10)
        assert instance.state == InstanceState.STOPPED

    # -------------------------
    # STOP
    # -------------------------

    def test_stop_removes_container(self, docker_runner, client, instance):
        instance.external_id = "0123456789abcdef"
        container = client.containers.get.return_value

        docker_runner.stop(instance)

        container.stop.assert_called_once_with(timeout=10)
        container.remove.assert_called_once()
        assert instance.state == InstanceState.STOPPED

    def test_stop_is_idempotent(self, docker_runner, client, instance):
        instance.external_id = "0123456789abcdef"
        client.containers.get.side_effect = NotFound("gone")

        docker_runner.stop(instance)

        assert instance.state == InstanceState.STOPPED

    def test_stop_without_recorded_id_looks_up_by_name(self, docker_runner, client, instance):
        client.containers.get.side_effect = NotFound("gone")

        docker_runner.stop(instance)

        client.containers.get.assert_called_once_with(instance.instance_id)
        assert instance.state == InstanceState.STOPPED

    def test_stop_api_error(self, docker_runner, client, instance):
        instance.external_id = "0123456789abcdef"
        client.containers.get.return_value.stop.side_effect = APIError("stuck")

        with pytest.raises(InstanceError):
            docker_runner.stop(instance)

    # -------------------------
    # INSPECTION
    # -------------------------

    def test_exec_returns_exit_code(self, docker_runner, client, instance):
        instance.external_id = "0123456789abcdef"
        container = client.containers.get.return_value
        container.status = "running"
        container.exec_run.return_value = MagicMock(exit_code=0)

        assert docker_runner.exec(instance, ["clickhouse-client", "-q", "SELECT 1"]) == 0

    def test_exec_on_exited_container(self, docker_runner, client, instance):
        instance.external_id = "0123456789abcdef"
        container = client.containers.get.return_value
        container.status = "exited"
        container.attrs = {"State": {"ExitCode": 137}}

        with pytest.raises(InstanceExited):
            docker_runner.exec(instance, ["true"])

    def test_exit_code(self, docker_runner, client, instance):
        instance.external_id = "0123456789abcdef"
        container = client.containers.get.return_value

        container.status = "running"
        assert docker_runner.exit_code(instance) is None

        container.status = "exited"
        container.attrs = {"State": {"ExitCode": 3}}
        assert docker_runner.exit_code(instance) == 3

    def test_exit_code_without_container(self, docker_runner, instance):
        assert docker_runner.exit_code(instance) == -1
