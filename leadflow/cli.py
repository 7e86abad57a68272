import json
from datetime import timedelta
from typing import List, Optional
import typer
from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from .core import config
from .core.logs import setup_logging
from .core.errors import LeadflowError
from .core.models import SignalState, STATUSES, NEW, utcnow
from .core.storage import init_db, SqliteSignalStore, SqliteAuditLog, SqliteRuleStats
from .core.parser import parse_file
from .core.sentiment import SegmentSentimentScorer, build_scorer
from .core.analyzer import TimelineAnalyzer
from .core.rules import JsonRuleRepository, SqliteRuleRepository, default_rules
from .core.actions import ActionExecutor
from .core.engine import RuleEngine
from .core.pipeline import LeadPipeline

app = typer.Typer(help="Leadflow: call sentiment timelines and lead auto-progression")
console = Console()


@app.callback()
def main(log_level: str = typer.Option(config.LOG_LEVEL, help="Logging level")):
    setup_logging(log_level)


def _format_mmss(sec: float) -> str:
    sec = int(sec)
    return f"{sec // 60:02d}:{sec % 60:02d}"


def _fail(e: Exception):
    console.print(f"[red]{type(e).__name__}: {e}[/red]")
    raise typer.Exit(1)


def _rule_repository():
    if config.RULES_PATH:
        return JsonRuleRepository(config.RULES_PATH)
    return SqliteRuleRepository(default_rules(), SqliteRuleStats(config.DB_PATH))


def _build_engine(rules=None):
    store = SqliteSignalStore(config.DB_PATH)
    audit = SqliteAuditLog(config.DB_PATH)
    executor = ActionExecutor(store, audit)
    return RuleEngine(rules if rules is not None else _rule_repository(), store, executor)


def _build_analyzer() -> TimelineAnalyzer:
    return TimelineAnalyzer(SegmentSentimentScorer(build_scorer(config.SCORER_BACKEND)))


def _save_rules(rules):
    if isinstance(rules, JsonRuleRepository):
        rules.save()


def _state_table(state: SignalState) -> Table:
    table = Table(title=f"Lead {state.lead_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="magenta")
    for k, v in state.to_dict().items():
        if k == "lead_id":
            continue
        table.add_row(k, ", ".join(v) if isinstance(v, list) else str(v))
    return table


def _evaluations_table(results) -> Table:
    table = Table(title="Rule evaluations")
    table.add_column("Lead", style="cyan")
    table.add_column("Rule", style="magenta")
    table.add_column("Outcome")
    table.add_column("Ratio", justify="right")
    table.add_column("Notes")
    for r in results:
        d = r if isinstance(r, dict) else r.to_dict()
        style = "green" if d["fired"] else ("yellow" if d["constraints_passed"] else "dim")
        table.add_row(d["lead_id"], d["rule_id"], f"[{style}]{d['outcome']}[/{style}]",
                      f"{d['ratio']:.2f}", d.get("notes") or "")
    return table


@app.command()
def init():
    """Create the lead and audit tables."""
    init_db(config.DB_PATH)
    console.print(f"[green]Initialised {config.DB_PATH}[/green]")


@app.command("add-lead")
def add_lead(lead_id: str,
             status: str = typer.Option(NEW, help="Current pipeline status"),
             qualification: float = typer.Option(0.0, help="Qualification score"),
             engagement: float = typer.Option(0.0, help="Current engagement score"),
             previous_engagement: float = typer.Option(0.0, help="Engagement score before the last touch"),
             sentiment: float = typer.Option(0.0, help="Latest sentiment score"),
             days_since_contact: Optional[float] = typer.Option(None, help="Days since the last contact")):
    """Create or overwrite a lead's signal state."""
    if status not in STATUSES:
        console.print(f"[red]Unknown status {status!r}; expected one of {', '.join(STATUSES)}[/red]")
        raise typer.Exit(1)
    now = utcnow()
    contact = now - timedelta(days=days_since_contact) if days_since_contact is not None else None
    store = SqliteSignalStore(config.DB_PATH)
    state = store.put(SignalState(lead_id=lead_id, status=status, qualification_score=qualification,
                                  sentiment_score=sentiment, engagement_score=engagement,
                                  previous_engagement_score=previous_engagement,
                                  last_contact_date=contact, status_updated_at=now))
    console.print(_state_table(state))


@app.command("show-lead")
def show_lead(lead_id: str):
    try:
        state = SqliteSignalStore(config.DB_PATH).get(lead_id)
    except LeadflowError as e:
        _fail(e)
    console.print(_state_table(state))


@app.command()
def analyze(transcript: str = typer.Argument(..., help="Transcript file (.txt or .json)"),
            lead: Optional[str] = typer.Option(None, help="Lead id to update and run rules for"),
            engagement: Optional[float] = typer.Option(None, help="Engagement score measured for this call"),
            as_json: bool = typer.Option(False, "--json", help="Print the timeline as JSON")):
    """Build a sentiment timeline for a call; with --lead, feed it to the rule engine."""
    analyzer = None
    try:
        t = parse_file(transcript)
        analyzer = _build_analyzer()
        if lead:
            engine = _build_engine()
            outcome = LeadPipeline(analyzer, engine).process_call(lead, t, engagement_score=engagement)
            _save_rules(engine.rules)
            timeline, evaluations = outcome.timeline, outcome.evaluations
        else:
            timeline, evaluations = analyzer.analyze(t), []
    except LeadflowError as e:
        _fail(e)
    finally:
        if analyzer is not None:
            analyzer.close()

    if as_json:
        console.print_json(json.dumps(timeline.to_dict()))
        return

    overall = timeline.overall_sentiment
    console.print(f"[bold]Overall:[/bold] {overall.label} ({overall.score:+.2f}, "
                  f"confidence {overall.confidence:.2f})")
    table = Table(title="Sentiment progression")
    table.add_column("Window", style="cyan")
    table.add_column("Sentiment", justify="right")
    table.add_column("Conf", justify="right")
    table.add_column("Emotion", style="magenta")
    table.add_column("Key phrases")
    for p in timeline.sentiment_progression:
        table.add_row(f"{_format_mmss(p.time_start)}-{_format_mmss(p.time_end)}", f"{p.sentiment:+.2f}",
                      f"{p.confidence:.2f}", p.dominant_emotion, "; ".join(p.key_phrases))
    console.print(table)

    if timeline.critical_moments:
        moments = Table(title="Critical moments")
        moments.add_column("At", style="cyan")
        moments.add_column("Type", style="magenta")
        moments.add_column("Impact")
        moments.add_column("Description")
        for m in timeline.critical_moments:
            moments.add_row(_format_mmss(m.time_point), m.type, m.impact, m.description)
        console.print(moments)

    if evaluations:
        console.print(_evaluations_table(evaluations))


@app.command()
def sweep(leads: List[str] = typer.Argument(None, help="Lead ids; all leads when omitted")):
    """Evaluate every active rule against the given leads."""
    try:
        engine = _build_engine()
        targets = leads or engine.store.lead_ids()
        if not targets:
            console.print("No leads stored yet.")
            raise typer.Exit(0)
        with tqdm(total=len(targets), desc="Sweeping", unit="lead") as bar:
            report = engine.sweep(targets, progress=lambda _: bar.update(1))
        _save_rules(engine.rules)
    except LeadflowError as e:
        _fail(e)

    console.print(_evaluations_table(report.results))
    for lead_id, error in report.failed_leads.items():
        console.print(f"[red]{lead_id}: {error}[/red]")
    stats = engine.stats()
    console.print(f"{stats['rules_evaluated']} evaluations, {stats['rules_fired']} fired, "
                  f"success rate {stats['success_rate']:.0%}")


@app.command()
def rules():
    """List the configured rules and their statistics."""
    try:
        repo = _rule_repository()
    except LeadflowError as e:
        _fail(e)
    table = Table(title="Rules")
    table.add_column("Rule ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Active")
    table.add_column("Triggers")
    table.add_column("Actions")
    table.add_column("Fired", justify="right")
    table.add_column("Success", justify="right")
    for r in repo.all():
        table.add_row(r.id, r.name, "yes" if r.is_active else "no",
                      ", ".join(f"{t.kind}({t.weight:g})" for t in r.triggers),
                      ", ".join(a.kind for a in r.actions),
                      str(r.times_triggered), f"{r.success_rate:.0%}")
    console.print(table)


@app.command()
def audit(lead_id: str, evaluations: bool = typer.Option(False, help="Also list rule evaluations")):
    """Show the action audit trail for a lead."""
    log = SqliteAuditLog(config.DB_PATH)
    records = log.actions(lead_id)
    if not records:
        console.print(f"No actions recorded for {lead_id}.")
    else:
        table = Table(title=f"Actions for {lead_id}")
        table.add_column("When", style="cyan")
        table.add_column("Rule", style="magenta")
        table.add_column("Action")
        table.add_column("Status change")
        table.add_column("Result")
        for r in records:
            before, after = r.previous_state.get("status", "-"), r.new_state.get("status", "-")
            result = "[green]ok[/green]" if r.success else f"[red]{r.error}[/red]"
            table.add_row(r.timestamp.strftime("%Y-%m-%d %H:%M"), r.rule_id, r.action.get("type", ""),
                          f"{before} -> {after}", result)
        console.print(table)
    if evaluations:
        console.print(_evaluations_table(log.evaluations(lead_id)))


if __name__ == "__main__":
    app()
