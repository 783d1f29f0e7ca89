from pathlib import Path

from typer.testing import CliRunner

from roleplay.cli import app

runner = CliRunner()
FIXTURE = Path(__file__).parent / "fixtures" / "coach_session.json"


def test_score_command_prints_report() -> None:
    result = runner.invoke(app, ["score", str(FIXTURE), "--json"])
    assert result.exit_code == 0
    assert '"overall_score": 95' in result.stdout


def test_scan_command_fails_on_violation() -> None:
    assert runner.invoke(app, ["scan", "What's your budget?"]).exit_code == 0
    result = runner.invoke(app, ["scan", "Home values always go up."])
    assert result.exit_code == 1
    assert "appreciation" in result.stdout


def test_interrupt_command() -> None:
    result = runner.invoke(app, ["interrupt", "--personality", "dominant", "--speaking", "100"])
    assert result.exit_code == 0
    assert "agent_monologue" in result.stdout
