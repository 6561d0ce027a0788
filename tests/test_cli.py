import json
from pathlib import Path

import httpx
import pytest
from typer.testing import CliRunner

from conftest import make_record, make_work, works_response
from openalex_graph_pipeline import cli
from openalex_graph_pipeline.core.config import EnvironmentConfig
from openalex_graph_pipeline.core.errors import ExitCode, GraphStoreError
from openalex_graph_pipeline.core.staging import JsonlLog
from openalex_graph_pipeline.graph.memory import MemoryGraphStore
from openalex_graph_pipeline.utils.http import get_client

runner = CliRunner()


@pytest.fixture
def env_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> EnvironmentConfig:
    """Point every artifact path at tmp_path and clear connection settings."""
    config = EnvironmentConfig(mode="test")
    config._paths = {
        "staging_path": tmp_path / "papers.jsonl",
        "failed_path": tmp_path / "failed_papers.jsonl",
        "crawl_state_path": tmp_path / "crawl_state.json",
        "log_dir": tmp_path / "logs",
    }
    monkeypatch.setattr(cli, "get_config", lambda: config)
    for name in ("OPENALEX_MAILTO", "NEO4J_PASSWORD", "OPENALEX_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"VITE_{name}", raising=False)
    return config


@pytest.fixture
def mock_openalex(monkeypatch: pytest.MonkeyPatch):
    """Route the CLI's HTTP client through a handler the test installs."""
    monkeypatch.setenv("OPENALEX_MAILTO", "dev@example.org")
    handlers = []

    def make_http_client(mailto: str) -> httpx.AsyncClient:
        return get_client(email=mailto, transport=httpx.MockTransport(handlers[0]))

    monkeypatch.setattr(cli, "make_http_client", make_http_client)
    return handlers.append


def test_import_with_empty_staging_is_no_work(env_config: EnvironmentConfig) -> None:
    result = runner.invoke(cli.app, ["--quiet", "import-papers", "--dry-run"])
    assert result.exit_code == ExitCode.NO_WORK


def test_import_dry_run_drains_staging(env_config: EnvironmentConfig) -> None:
    JsonlLog(env_config.staging_path).append([make_record("W1"), make_record("W2", references=["W1"])])

    result = runner.invoke(cli.app, ["--quiet", "import-papers", "--dry-run"])

    assert result.exit_code == ExitCode.OK, result.output
    assert "Imported 2/2 papers" in result.output
    assert JsonlLog(env_config.staging_path).read_lines() == []
    assert JsonlLog(env_config.failed_path).read_lines() == []


def test_import_without_neo4j_password_is_config_error(env_config: EnvironmentConfig) -> None:
    JsonlLog(env_config.staging_path).append([make_record("W1")])

    result = runner.invoke(cli.app, ["--quiet", "import-papers"])

    assert result.exit_code == ExitCode.CONFIG_ERROR
    # nothing was consumed
    assert len(JsonlLog(env_config.staging_path)) == 1


def test_fetch_without_mailto_is_config_error(env_config: EnvironmentConfig) -> None:
    result = runner.invoke(cli.app, ["--quiet", "fetch", "forward"])
    assert result.exit_code == ExitCode.CONFIG_ERROR
    assert "OPENALEX_MAILTO" in result.output


def test_fetch_rejects_unknown_direction(env_config: EnvironmentConfig) -> None:
    result = runner.invoke(cli.app, ["--quiet", "fetch", "sideways"])
    assert result.exit_code == ExitCode.CONFIG_ERROR


def test_fetch_without_state_file_is_config_error(env_config: EnvironmentConfig, mock_openalex) -> None:
    mock_openalex(lambda request: works_response([]))
    result = runner.invoke(cli.app, ["--quiet", "fetch", "forward"])
    assert result.exit_code == ExitCode.CONFIG_ERROR


def test_fetch_stages_records(env_config: EnvironmentConfig, mock_openalex) -> None:
    env_config.crawl_state_path.write_text(
        json.dumps(
            {
                "concepts": {"Ecology": "C2"},
                "start_date": "2024-01-01",
                "earliest_fetched_date": "2025-01-01",
                "latest_fetched_date": "2025-01-01",
                "page_size": 50,
            }
        )
    )
    mock_openalex(lambda request: works_response([make_work("W1"), make_work("W2")]))

    result = runner.invoke(cli.app, ["--quiet", "fetch", "forward"])

    assert result.exit_code == ExitCode.OK, result.output
    assert "Staged 2 papers" in result.output
    assert len(JsonlLog(env_config.staging_path)) == 2
    state = json.loads(env_config.crawl_state_path.read_text())
    assert state["frontiers"]["C2"]["latest_fetched_date"] == "2025-01-02"


def test_fill_stubs_on_empty_graph_is_no_work(env_config: EnvironmentConfig, mock_openalex) -> None:
    mock_openalex(lambda request: works_response([]))
    result = runner.invoke(cli.app, ["--quiet", "fill-stubs", "--dry-run"])
    assert result.exit_code == ExitCode.NO_WORK


def test_prune_and_schema_dry_run(env_config: EnvironmentConfig) -> None:
    assert runner.invoke(cli.app, ["--quiet", "prune", "--dry-run"]).exit_code == ExitCode.OK
    assert runner.invoke(cli.app, ["--quiet", "init-schema", "--dry-run"]).exit_code == ExitCode.OK


def test_replay_failed_dry_run_empties_failed_log(env_config: EnvironmentConfig) -> None:
    JsonlLog(env_config.failed_path).append([make_record("W1")])

    result = runner.invoke(cli.app, ["--quiet", "replay-failed", "--dry-run"])

    assert result.exit_code == ExitCode.OK, result.output
    assert JsonlLog(env_config.failed_path).read_lines() == []


def test_sync_dry_run_runs_every_stage(env_config: EnvironmentConfig, mock_openalex) -> None:
    env_config.crawl_state_path.write_text(
        json.dumps(
            {
                "concepts": {"Ecology": "C2"},
                "start_date": "2024-01-01",
                "earliest_fetched_date": "2025-01-01",
                "latest_fetched_date": "2025-01-01",
            }
        )
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["filter"].startswith("openalex:"):
            return works_response([make_work("W9", title="Referenced")])
        return works_response([make_work("W1", references=["W9"])])

    mock_openalex(handler)

    result = runner.invoke(cli.app, ["--quiet", "sync", "forward", "--dry-run"])

    assert result.exit_code == ExitCode.OK, result.output
    assert "Staged 1, imported 1, no failures" in result.output


class UnreachableStore(MemoryGraphStore):
    def stub_paper_ids(self, limit: int) -> list[str]:
        raise GraphStoreError("Neo4j stub lookup failed: ServiceUnavailable")

    def ensure_schema(self) -> None:
        raise RuntimeError("driver exploded")


def test_unreachable_graph_exits_fatal(env_config: EnvironmentConfig, mock_openalex, monkeypatch) -> None:
    mock_openalex(lambda request: works_response([]))
    monkeypatch.setattr(cli, "make_store", lambda dry_run: UnreachableStore())

    result = runner.invoke(cli.app, ["--quiet", "fill-stubs"])

    assert result.exit_code == ExitCode.FATAL
    assert result.exit_code != ExitCode.NO_WORK
    assert "stub lookup failed" in result.output


def test_unexpected_error_exits_fatal(env_config: EnvironmentConfig, monkeypatch) -> None:
    monkeypatch.setattr(cli, "make_store", lambda dry_run: UnreachableStore())

    result = runner.invoke(cli.app, ["--quiet", "init-schema"])

    assert result.exit_code == ExitCode.FATAL
    assert "RuntimeError" in result.output


def test_sync_with_nothing_to_do_exits_ok(env_config: EnvironmentConfig, mock_openalex) -> None:
    env_config.crawl_state_path.write_text(
        json.dumps(
            {
                "concepts": {"Ecology": "C2"},
                "start_date": "2025-01-01",
                "earliest_fetched_date": "2025-01-01",
                "latest_fetched_date": "2025-01-01",
            }
        )
    )
    mock_openalex(lambda request: works_response([]))

    result = runner.invoke(cli.app, ["--quiet", "sync", "backward", "--dry-run"])

    assert result.exit_code == ExitCode.OK, result.output
    assert "Staged 0, imported 0, no failures" in result.output
