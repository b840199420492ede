"""Tests for the maintenance entry point."""

import json

import pytest

from app.main import main


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


class TestMain:
    """Tests for the topup, summary and check-config commands."""

    def test_topup_on_empty_database(self, database_url, capsys):
        """Test a top-up with no templates generates nothing."""
        assert main(["--database-url", database_url, "topup", "--horizon", "2030-01-01"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["generated_count"] == 0
        assert output["templates_processed"] == 0

    def test_summary_on_empty_database(self, database_url, capsys):
        """Test the summary of an empty portfolio."""
        assert main(["--database-url", database_url, "summary"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["active_count"] == 0
        assert output["monthly_payments"] == {}

    def test_check_config(self, monkeypatch, capsys):
        """Test check-config fails when a section is invalid."""
        monkeypatch.setenv("RECURRENCE_MAX_ITERATIONS", "0")
        assert main(["check-config"]) == 1
        assert json.loads(capsys.readouterr().out)["recurrence"] is False

    def test_bad_horizon_exits(self, database_url):
        """Test a malformed horizon is rejected by the parser."""
        with pytest.raises(SystemExit):
            main(["--database-url", database_url, "topup", "--horizon", "soon"])
