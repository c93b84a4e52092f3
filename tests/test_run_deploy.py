"""Test the one-shot deploy command."""

from unittest.mock import MagicMock

import pytest

from cutover_engine import run_deploy
from cutover_engine.orchestrator.cutover_orchestrator import (
    EXIT_CIRCUIT_OPEN,
    EXIT_COMMITTED,
    EXIT_ERROR,
    EXIT_ROLLED_BACK,
)

from conftest import RESOURCE_ID


@pytest.fixture
def cli(orchestrator, monkeypatch):
    monkeypatch.setattr(run_deploy, "get_orchestrator", lambda: orchestrator)
    monkeypatch.setattr(run_deploy.signal, "signal", MagicMock())
    return orchestrator


class TestRunDeploy:

    def test_commit_exit_code(self, cli):
        assert run_deploy.main([RESOURCE_ID, "--version", "v1"]) == EXIT_COMMITTED
        assert cli.status(RESOURCE_ID).current_version == "v1"

    def test_rolled_back_exit_code(self, cli):
        assert run_deploy.main([RESOURCE_ID, "--version", "v3"]) == EXIT_ROLLED_BACK

    def test_circuit_open_exit_code(self, cli):
        for _ in range(3):
            run_deploy.main([RESOURCE_ID, "--version", "v3"])

        assert run_deploy.main([RESOURCE_ID, "--version", "v3"]) == EXIT_CIRCUIT_OPEN

    def test_unknown_version(self, cli):
        assert run_deploy.main([RESOURCE_ID, "--version", "ghost"]) == EXIT_ERROR

    def test_register_then_deploy(self, cli, health_check):
        health_check.healthy_versions.add("v7")

        code = run_deploy.main([
            RESOURCE_ID,
            "--version", "v7",
            "--register",
            "--digest", "sha256:77",
            "--image-uri", "registry.local/clickhouse:v7",
        ])

        assert code == EXIT_COMMITTED
        assert cli.registry.resolve("v7").digest == "sha256:77"

    def test_version_from_tag_file(self, cli, health_check, tmp_path, monkeypatch):
        tag_file = tmp_path / ".image-tag"
        tag_file.write_text("20260101-120000\n")
        monkeypatch.setattr(run_deploy.settings, "image_tag_file", str(tag_file))
        health_check.healthy_versions.add("20260101-120000")

        assert run_deploy.main([RESOURCE_ID]) == EXIT_COMMITTED
        assert cli.status(RESOURCE_ID).current_version == "20260101-120000"

    def test_empty_tag_file(self, cli, tmp_path, monkeypatch):
        monkeypatch.setattr(run_deploy.settings, "image_tag_file", str(tmp_path / "missing"))

        assert run_deploy.main([RESOURCE_ID]) == EXIT_ERROR

    def test_rollback(self, cli):
        run_deploy.main([RESOURCE_ID, "--version", "v1"])
        run_deploy.main([RESOURCE_ID, "--version", "v2"])

        assert run_deploy.main([RESOURCE_ID, "--rollback"]) == EXIT_COMMITTED
        assert cli.status(RESOURCE_ID).current_version == "v1"
