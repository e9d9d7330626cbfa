# CLI command tests
import pytest
from click.testing import CliRunner

from listing_sync.cli.main import cli
from listing_sync.core.config import clear_settings_cache


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/checkpoints.db")
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield CliRunner()
    clear_settings_cache()


def test_cleanup_checkpoints_on_empty_store(runner):
    result = runner.invoke(cli, ["cleanup-checkpoints", "--max-age-days", "1"])

    assert result.exit_code == 0, result.output
    assert "Removed 0 checkpoint(s)" in result.output


def test_apply_requires_approvals(runner, tmp_path):
    csv_file = tmp_path / "edits.csv"
    csv_file.write_text("Listing ID,Title\r\n1,Mug\r\n", encoding="utf-8")

    result = runner.invoke(cli, ["apply", str(csv_file), "--no-backup"])

    assert result.exit_code == 1
    assert "No approved changes" in result.output
