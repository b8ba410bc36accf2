"""
Command Runner Tests
====================
Local execution, timeouts, container dispatch and log excerpts.
Docker calls are mocked.
"""
import sys
from unittest.mock import MagicMock, patch

import pytest

from healer.executor.command_runner import create_log_excerpt, run_command


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")
class TestLocalExecution:

    def test_successful_command(self, tmp_path):
        result = run_command("echo hello", str(tmp_path), timeout=10)
        assert result.ok is True
        assert result.exit_code == 0
        assert "hello" in result.output
        assert result.environment["mode"] == "local"

    def test_failing_command(self, tmp_path):
        result = run_command("exit 3", str(tmp_path), timeout=10)
        assert result.ok is False
        assert result.exit_code == 3
        assert result.error is None

    def test_timeout(self, tmp_path):
        result = run_command("sleep 5", str(tmp_path), timeout=1)
        assert result.timed_out is True
        assert result.ok is False
        assert "timed out" in result.error


def test_container_execution_is_removed_afterwards(tmp_path):
    container = MagicMock()
    container.wait.return_value = {"StatusCode": 0}
    container.logs.return_value = b"4 passed"
    container.short_id = "abc123"
    docker_client = MagicMock()
    docker_client.containers.run.return_value = container

    with patch("healer.executor.command_runner.docker.from_env", return_value=docker_client):
        result = run_command("pytest -q", str(tmp_path), timeout=30, image="python:3.11-slim")

    assert result.ok is True
    assert result.output == "4 passed"
    assert result.environment["container_id"] == "abc123"
    kwargs = docker_client.containers.run.call_args.kwargs
    assert kwargs["network_mode"] == "none"
    assert kwargs["command"] == ["sh", "-c", "pytest -q"]
    container.remove.assert_called_once_with(force=True)


def test_log_excerpt_keeps_head_and_tail():
    log = "\n".join(f"line {i}" for i in range(100))
    excerpt = create_log_excerpt(log, head=2, tail=2)
    assert excerpt.splitlines() == ["line 0", "line 1", "... (96 lines omitted) ...", "line 98", "line 99"]
    assert create_log_excerpt("short") == "short"
