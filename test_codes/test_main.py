import json

import pytest

from main import build_parser, main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "file_storage:\n"
        f"  logs_path: \"{(tmp_path / 'logs').as_posix()}\"\n"
        f"  exports_path: \"{(tmp_path / 'exports').as_posix()}\"\n"
        "analysis_service:\n"
        "  base_url: \"http://127.0.0.1:9\"\n"
        "  timeout_seconds: 1\n"
        "  max_retry_attempts: 1\n"
        "  retry_delay_seconds: 0\n"
        "  historical_context_days: 0\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def batch_file(tmp_path):
    path = tmp_path / "batch.json"
    path.write_text(json.dumps([
        {"timestamp": "2024-01-15T10:30:00Z", "source": "OrderService", "message": "Timeout calling payments"},
        {"timestamp": "2024-01-15T11:00:00Z", "source": "OrderService", "message": "Timeout calling payments"},
    ]), encoding="utf-8")
    return str(path)


class TestLauncher:

    def test_parser_requires_mode(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    @pytest.mark.asyncio
    async def test_collect_then_stats(self, config_file, batch_file, capsys):
        assert await main(["--config", config_file, "collect", batch_file]) == 0
        capsys.readouterr()

        exit_code = await main(["--config", config_file, "stats",
                                "--from", "2024-01-15T00:00:00+00:00", "--to", "2024-01-15T23:59:59+00:00"])

        assert exit_code == 0
        statistics = json.loads(capsys.readouterr().out)
        assert statistics["totalLogs"] == 2
        assert statistics["unanalyzedCount"] == 2

    @pytest.mark.asyncio
    async def test_run_with_unreachable_service_reports_failures(self, config_file, batch_file, capsys):
        await main(["--config", config_file, "collect", batch_file])
        capsys.readouterr()

        exit_code = await main(["--config", config_file, "run", "--date", "2024-01-15"])

        summary = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert summary["status"] == "COMPLETED_WITH_FAILURES"
        assert summary["failed"] == 2

    @pytest.mark.asyncio
    async def test_missing_config_exits_nonzero(self, tmp_path):
        assert await main(["--config", str(tmp_path / "absent.yaml"), "stats"]) == 1
