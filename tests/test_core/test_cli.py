"""Tests for the scrape-orch CLI."""

from typer.testing import CliRunner

from scrape_orchestrator.cli import app

runner = CliRunner()


class TestCronPreview:
    def test_structured_frequency(self):
        """Should print the translated cron and the requested number of fire times."""
        result = runner.invoke(app, ["cron-preview", "daily@09:00", "--tz", "UTC", "-n", "2"])

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines[0] == "0 9 * * *  (Daily at 09:00, UTC)"
        assert len(lines) == 3
        assert all("09:00 UTC" in line for line in lines[1:])

    def test_invalid_expression(self):
        result = runner.invoke(app, ["cron-preview", "0 25 * * *"])

        assert result.exit_code == 2

    def test_unknown_timezone(self):
        result = runner.invoke(app, ["cron-preview", "daily@09:00", "--tz", "Nowhere/City"])

        assert result.exit_code == 2
        assert "Unknown timezone" in result.output


class TestSubmitValidation:
    def test_pending_without_subtype(self):
        """Should reject the request before touching the database."""
        result = runner.invoke(
            app, ["submit", "-t", "target-1", "-c", "cred-1", "--type", "pendentes"]
        )

        assert result.exit_code == 2
        assert "scrape_subtype" in result.output
