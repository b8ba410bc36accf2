"""
Config & Shutdown Tests
=======================
YAML loading, section validation, the shared iteration cap and
cooperative cancellation.
"""
import asyncio
import signal

import pytest
import yaml
from pydantic import ValidationError

from healer.core.config import LoopConfig, load_config
from healer.core.shutdown import CancellationToken, GracefulShutdown


class TestLoadConfig:

    def test_defaults_without_file(self):
        config = load_config()
        assert config.parallel_fixes >= 1
        assert config.convergence.stall_detection_window == 3
        assert config.pipeline.stage_weights["syntax"] == 20

    def test_yaml_sections_and_overrides(self, tmp_path):
        path = tmp_path / "healer.yaml"
        path.write_text(yaml.safe_dump({
            "max_iterations": 4,
            "convergence": {"acceptable_error_threshold": 2},
            "pipeline": {"smoke_command": "make smoke"},
        }), encoding="utf-8")

        config = load_config(str(path), parallel_fixes=5)

        assert config.max_iterations == 4
        assert config.safety.max_iterations == 4
        assert config.parallel_fixes == 5
        assert config.convergence.acceptable_error_threshold == 2
        assert config.pipeline.smoke_command == "make smoke"

    def test_explicit_safety_cap_wins(self, tmp_path):
        path = tmp_path / "healer.yaml"
        path.write_text(yaml.safe_dump({"max_iterations": 4, "safety": {"max_iterations": 2}}),
                        encoding="utf-8")
        assert load_config(str(path)).safety.max_iterations == 2

    def test_unknown_keys_are_rejected(self, tmp_path):
        path = tmp_path / "healer.yaml"
        path.write_text(yaml.safe_dump({"safety": {"max_iteratons": 3}}), encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(str(path))

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "healer.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_direct_construction_shares_iteration_cap(self):
        config = LoopConfig(max_iterations=50)
        assert config.safety.max_iterations == 50

    def test_explicit_safety_section_keeps_its_cap(self):
        config = LoopConfig(max_iterations=50, safety={"max_iterations": 7})
        assert config.safety.max_iterations == 7

    def test_parallel_fixes_must_be_positive(self):
        with pytest.raises(ValidationError):
            LoopConfig(parallel_fixes=0)

    def test_resolve_against_workspace(self, tmp_path):
        config = LoopConfig(workspace=str(tmp_path))
        assert config.resolve("results.json") == str(tmp_path / "results.json")
        assert config.resolve("/abs/path.json") == "/abs/path.json"


class TestCancellation:

    def test_first_reason_wins(self):
        token = CancellationToken()
        assert token.is_cancelled is False
        token.cancel("first")
        token.cancel("second")
        assert token.is_cancelled is True
        assert token.reason == "first"

    def test_signal_cancels_token(self):
        token = CancellationToken()
        shutdown = GracefulShutdown(token)
        shutdown._handle(signal.SIGTERM)
        assert token.reason == "signal SIGTERM"

    def test_install_and_uninstall_inside_event_loop(self):
        token = CancellationToken()

        async def run_test():
            shutdown = GracefulShutdown(token)
            shutdown.install()
            shutdown.uninstall()

        asyncio.run(run_test())
        assert token.is_cancelled is False
