from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from couchstream.cli import cli
from couchstream.core.models import PipelineResult, PipelineStats
from couchstream.errors import RetryExhaustedError, StaleTokenError, TransientError


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "couchstream.toml"
    checkpoints = (tmp_path / "checkpoints.json").as_posix()
    path.write_text(
        f"""
[[pipelines]]
name = "orders"
source_url = "http://localhost:5984"
source_database = "orders"
sink_url = "mongodb://localhost:27017"
sink_database = "replica"

[pipelines.file]
path = "{checkpoints}"
"""
    )
    return path


def test_checkpoint_show_and_reseed(config_file: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["checkpoint", "show", "--config", str(config_file)])
    assert result.exit_code == 0, result.output
    assert "none" in result.output

    result = runner.invoke(
        cli, ["checkpoint", "reseed", "--config", str(config_file), "--pipeline", "orders", "--token", "42-abc"]
    )
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["checkpoint", "show", "--config", str(config_file), "--pipeline", "orders"])
    assert result.exit_code == 0, result.output
    assert "42-abc" in result.output


def test_reseed_now_uses_current_source_token(config_file: Path) -> None:
    source = AsyncMock()
    source.current_token.return_value = "99-zzz"

    with patch("couchstream.cli.build_source", return_value=source):
        result = CliRunner().invoke(
            cli, ["checkpoint", "reseed", "--config", str(config_file), "--pipeline", "orders", "--now"]
        )

    assert result.exit_code == 0, result.output
    assert "99-zzz" in result.output
    source.aclose.assert_awaited_once()


@pytest.mark.parametrize(
    "extra",
    [
        [],
        ["--token", "1", "--now"],
    ],
)
def test_reseed_needs_exactly_one_target(config_file: Path, extra: list[str]) -> None:
    result = CliRunner().invoke(
        cli, ["checkpoint", "reseed", "--config", str(config_file), "--pipeline", "orders", *extra]
    )

    assert result.exit_code == 2


def test_unknown_pipeline(config_file: Path) -> None:
    result = CliRunner().invoke(cli, ["checkpoint", "show", "--config", str(config_file), "--pipeline", "nope"])

    assert result.exit_code == 2


def test_bad_config_exits_with_config_code(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--config", str(tmp_path / "missing.toml")])

    assert result.exit_code == 2
    assert "configuration error" in result.output


def test_run_reports_summary_and_worst_exit_code(config_file: Path) -> None:
    results = [
        PipelineResult(
            source_key="orders",
            status="failed",
            stats=PipelineStats(admitted=3, applied=2),
            last_checkpoint="2",
            error=StaleTokenError("2", "compacted"),
        )
    ]
    run_all = AsyncMock(return_value=results)

    with (
        patch("couchstream.cli._run_all", run_all),
        patch("couchstream.cli.configure_logging") as configure,
    ):
        result = CliRunner().invoke(cli, ["run", "--config", str(config_file), "--once"])

    assert result.exit_code == 4
    assert "stale-token" in result.output
    configure.assert_called_once_with("info", "compact")
    assert run_all.await_args.kwargs == {"follow": False}


def test_run_clean_exit(config_file: Path) -> None:
    results = [PipelineResult(source_key="orders", status="stopped", stats=PipelineStats(), last_checkpoint="9")]

    with (
        patch("couchstream.cli._run_all", AsyncMock(return_value=results)),
        patch("couchstream.cli.configure_logging"),
    ):
        result = CliRunner().invoke(cli, ["run", "--config", str(config_file)])

    assert result.exit_code == 0, result.output



def test_run_crash_outranks_restartable_failure(config_file: Path) -> None:
    results = [
        PipelineResult(source_key="orders", status="failed", stats=PipelineStats(), error=RuntimeError("boom")),
        PipelineResult(
            source_key="users",
            status="halted",
            stats=PipelineStats(),
            error=RetryExhaustedError("write", 5, TransientError("timeout")),
        ),
    ]

    with (
        patch("couchstream.cli._run_all", AsyncMock(return_value=results)),
        patch("couchstream.cli.configure_logging"),
    ):
        result = CliRunner().invoke(cli, ["run", "--config", str(config_file)])

    assert result.exit_code == 1, result.output
    assert "boom" in result.output
