import pytest
from typer.testing import CliRunner
from leadflow import cli
from leadflow.core import config
from leadflow.core.storage import SqliteSignalStore, SqliteAuditLog, SqliteRuleStats

runner = CliRunner()


@pytest.fixture
def db(tmp_path, monkeypatch):
    path = str(tmp_path / "leadflow.db")
    monkeypatch.setattr(config, "DB_PATH", path)
    monkeypatch.setattr(config, "RULES_PATH", "")
    monkeypatch.setattr(config, "SCORER_BACKEND", "vader")
    return path


def test_init_and_add_lead(db):
    result = runner.invoke(cli.app, ["init"])
    assert result.exit_code == 0
    result = runner.invoke(cli.app, ["add-lead", "L1", "--status", "contacted", "--qualification", "70"])
    assert result.exit_code == 0
    state = SqliteSignalStore(db).get("L1")
    assert state.status == "contacted" and state.qualification_score == 70

    assert runner.invoke(cli.app, ["show-lead", "L1"]).exit_code == 0
    assert runner.invoke(cli.app, ["show-lead", "nobody"]).exit_code == 1
    assert runner.invoke(cli.app, ["add-lead", "L2", "--status", "archived"]).exit_code == 1


def test_sweep_progresses_lead(db):
    runner.invoke(cli.app, ["add-lead", "L1", "--status", "contacted", "--qualification", "70",
                            "--sentiment", "0.9", "--engagement", "68", "--previous-engagement", "45"])
    result = runner.invoke(cli.app, ["sweep"])
    assert result.exit_code == 0, result.output
    assert SqliteSignalStore(db).get("L1").status == "qualified"
    [record] = SqliteAuditLog(db).actions("L1")
    assert record.rule_id == "rule_high_sentiment"
    assert runner.invoke(cli.app, ["audit", "L1", "--evaluations"]).exit_code == 0


def test_analyze_transcript(db, tmp_path):
    call = tmp_path / "call.txt"
    call.write_text("[00:00] Sam (agent): Thanks for joining.\n"
                    "[00:08] Dana (customer): Happy to, this looks great.\n"
                    "[00:40] Dana (customer): Can we start a trial next week?\n", encoding="utf-8")
    result = runner.invoke(cli.app, ["analyze", str(call)])
    assert result.exit_code == 0, result.output
    assert "Overall" in result.output

    assert runner.invoke(cli.app, ["analyze", str(tmp_path / "missing.txt")]).exit_code == 1


def test_rules_listing(db):
    assert runner.invoke(cli.app, ["rules"]).exit_code == 0


def test_rule_stats_carry_over_between_runs(db, monkeypatch):
    monkeypatch.setattr(cli.console, "width", 200)
    runner.invoke(cli.app, ["add-lead", "L1", "--status", "contacted", "--qualification", "70",
                            "--sentiment", "0.9", "--engagement", "68", "--previous-engagement", "45"])
    assert runner.invoke(cli.app, ["sweep"]).exit_code == 0
    assert SqliteRuleStats(db).all()["rule_high_sentiment"][:2] == (1, 1)

    result = runner.invoke(cli.app, ["rules"])
    assert result.exit_code == 0, result.output
    [row] = [line for line in result.output.splitlines() if "rule_high_sentiment" in line]
    assert "100%" in row
