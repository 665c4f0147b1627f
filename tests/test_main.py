"""
Tests for the Service Entry Point
=================================

Tests cover:
- Argument parsing
- Startup failure on bad configuration
- Service start/stop lifecycle
"""

import asyncio

import pytest

from main import ExecutionService, main, parse_args


class TestEntryPoint:
    """Tests for parse_args and main."""

    def test_defaults(self):
        args = parse_args([])
        assert args.config == "config.yaml"
        assert args.log_level is None

    @pytest.mark.asyncio
    async def test_missing_config_exits_with_error(self, tmp_path):
        assert await main(["--config", str(tmp_path / "missing.yaml")]) == 1

    @pytest.mark.asyncio
    async def test_invalid_config_exits_with_error(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("rl:\n  epsilon: 3\n")
        assert await main(["--config", str(path)]) == 1


class TestExecutionService:
    """Tests for the service lifecycle."""

    @pytest.mark.asyncio
    async def test_start_until_shutdown(self, test_config):
        test_config["service"] = {"stats_interval_seconds": 0.01}
        service = ExecutionService(test_config)

        task = asyncio.create_task(service.start())
        await asyncio.sleep(0.05)
        assert service.orchestrator.gate.is_monitoring is True

        service.request_shutdown()
        await task
        await service.stop()
        assert service.orchestrator.gate.is_monitoring is False

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, test_config):
        service = ExecutionService(test_config)
        await service.stop()
        assert service.orchestrator.gate.is_monitoring is False
