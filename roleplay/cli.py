import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .buyer_behavior import PersonaBehaviorModel
from .compliance import ComplianceEngine, compliance_pass
from .models import CoachTurn, InterruptionContext, TranscriptEntry
from .scoring import ScoringEngine


app = typer.Typer(help="Sales roleplay scoring CLI")
console = Console()


def _load_turns(path: Path) -> List[CoachTurn]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("turns") or data.get("transcript") or []
    turns: List[CoachTurn] = []
    for item in data:
        # Live-coaching turns carry "text"; session transcripts carry "content".
        if "text" in item:
            turns.append(CoachTurn.model_validate(item))
        else:
            turns.append(CoachTurn.from_entry(TranscriptEntry.model_validate(item)))
    return turns


@app.command("score")
def score(
    transcript: str = typer.Argument(..., help="JSON file with a list of turns or transcript entries."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw report as JSON."),
):
    """Score a finished conversation with the heuristic coach."""
    p = Path(transcript).expanduser().resolve()
    if not p.exists():
        raise typer.BadParameter(f"transcript not found: {p}")
    try:
        turns = _load_turns(p)
    except Exception as e:
        raise typer.BadParameter(f"Failed to read transcript: {e}")

    report = ScoringEngine().score(turns)
    if as_json:
        console.print_json(report.model_dump_json())
        return

    table = Table(title="Phase scores")
    table.add_column("Phase")
    table.add_column("Score", justify="right")
    for phase, value in report.phase_scores.items():
        table.add_row(phase, str(value))
    console.print(table)
    console.print(Panel.fit(report.summary, title=f"Grade {report.grade}"))
    drill = report.next_drill
    console.print(Panel.fit(f"{drill.rule}\n\n{drill.script}", title=drill.title))


@app.command("scan")
def scan(text: str = typer.Argument(..., help="Trainee utterance to check.")):
    """Check one utterance against the compliance rules."""
    violations = ComplianceEngine().scan(text, 0)
    if not violations:
        console.print(Panel.fit("No violations found.", title="Compliance"))
        return
    table = Table(title="Compliance violations")
    table.add_column("Category", no_wrap=True)
    table.add_column("Rule", no_wrap=True)
    table.add_column("Severity", no_wrap=True)
    table.add_column("Suggestion")
    for v in violations:
        table.add_row(v.category, v.rule, v.severity, v.suggestion)
    console.print(table)
    if not compliance_pass(violations):
        raise typer.Exit(code=1)


@app.command("interrupt")
def interrupt(
    personality: str = typer.Option(..., help="Buyer personality."),
    speaking: float = typer.Option(0.0, help="Seconds the trainee has been speaking."),
    silence: float = typer.Option(0.0, help="Seconds of silence."),
    repetitions: int = typer.Option(0, help="Recent repeated utterances."),
    ignored: bool = typer.Option(False, help="Whether the buyer's last question was ignored."),
    resistance: Optional[str] = typer.Option(None, help="Buyer resistance level."),
):
    """Show whether the buyer would interrupt, and with what line."""
    context = InterruptionContext(
        agent_speaking_duration=speaking,
        silence_duration=silence,
        repetition_count=repetitions,
        buyer_question_ignored=ignored,
        personality=personality,
        resistance_level=resistance,
    )
    decision = PersonaBehaviorModel().should_interrupt(context)
    if not decision.should_interrupt:
        console.print(Panel.fit("Buyer keeps listening.", title="No interruption"))
        return
    console.print(Panel.fit(f"{decision.phrase}\n\nReason: {decision.reason}", title="Interruption"))


if __name__ == "__main__":
    app()
