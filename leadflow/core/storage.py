import json
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from .models import SignalState, AuditRecord, RuleEvaluationResult
from .errors import UnknownLead
from .config import DB_PATH

DDL = [
    '''CREATE TABLE IF NOT EXISTS leads(
        lead_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        qualification_score REAL DEFAULT 0.0,
        sentiment_score REAL DEFAULT 0.0,
        engagement_score REAL DEFAULT 0.0,
        previous_engagement_score REAL DEFAULT 0.0,
        last_contact_date TEXT,
        status_updated_at TEXT,
        critical_moments TEXT DEFAULT '[]',
        version INTEGER NOT NULL DEFAULT 0
    )''',
    '''CREATE TABLE IF NOT EXISTS action_audit(
        audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
        lead_id TEXT,
        rule_id TEXT,
        action TEXT,
        previous_state TEXT,
        new_state TEXT,
        trigger_confidences TEXT,
        success INTEGER,
        error TEXT,
        created_at TEXT
    )''',
    '''CREATE TABLE IF NOT EXISTS rule_evaluations(
        eval_id INTEGER PRIMARY KEY AUTOINCREMENT,
        lead_id TEXT,
        rule_id TEXT,
        outcome TEXT,
        fired INTEGER,
        payload TEXT,
        created_at TEXT
    )''',
    '''CREATE TABLE IF NOT EXISTS rule_stats(
        rule_id TEXT PRIMARY KEY,
        times_triggered INTEGER NOT NULL DEFAULT 0,
        successes INTEGER NOT NULL DEFAULT 0,
        total_impact REAL NOT NULL DEFAULT 0.0,
        updated_at TEXT
    )''',
    "CREATE INDEX IF NOT EXISTS idx_rule_evaluations_fired ON rule_evaluations(lead_id, rule_id, fired)",
]

LEAD_COLS = ("lead_id", "status", "qualification_score", "sentiment_score", "engagement_score",
             "previous_engagement_score", "last_contact_date", "status_updated_at",
             "critical_moments", "version")


def connect(db_path: str = DB_PATH):
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(p), timeout=10)


def init_db(db_path: str = DB_PATH):
    con = connect(db_path)
    try:
        cur = con.cursor()
        for stmt in DDL:
            cur.execute(stmt)
        con.commit()
    finally:
        con.close()


def _dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def _iso(d: Optional[datetime]) -> Optional[str]:
    return d.isoformat() if d else None


def _row_to_state(row) -> SignalState:
    d = dict(zip(LEAD_COLS, row))
    return SignalState(
        lead_id=d["lead_id"], status=d["status"],
        qualification_score=d["qualification_score"], sentiment_score=d["sentiment_score"],
        engagement_score=d["engagement_score"], previous_engagement_score=d["previous_engagement_score"],
        last_contact_date=_dt(d["last_contact_date"]), status_updated_at=_dt(d["status_updated_at"]),
        critical_moments=tuple(json.loads(d["critical_moments"] or "[]")), version=d["version"],
    )


def _state_values(s: SignalState) -> tuple:
    return (s.lead_id, s.status, s.qualification_score, s.sentiment_score, s.engagement_score,
            s.previous_engagement_score, _iso(s.last_contact_date), _iso(s.status_updated_at),
            json.dumps(list(s.critical_moments)), s.version)


class MemorySignalStore:
    """SignalState per lead with versioned compare-and-swap writes."""

    def __init__(self, states=()):
        self._lock = threading.Lock()
        self._states: Dict[str, SignalState] = {s.lead_id: s for s in states}

    def get(self, lead_id: str) -> SignalState:
        with self._lock:
            if lead_id not in self._states:
                raise UnknownLead(lead_id)
            return self._states[lead_id]

    def put(self, state: SignalState) -> SignalState:
        with self._lock:
            prev = self._states.get(state.lead_id)
            stored = replace(state, version=prev.version + 1 if prev else state.version)
            self._states[state.lead_id] = stored
            return stored

    def compare_and_swap(self, state: SignalState, expected_version: int) -> Optional[SignalState]:
        with self._lock:
            cur = self._states.get(state.lead_id)
            if cur is None:
                raise UnknownLead(state.lead_id)
            if cur.version != expected_version:
                return None
            stored = replace(state, version=expected_version + 1)
            self._states[state.lead_id] = stored
            return stored

    def lead_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._states)


class SqliteSignalStore:
    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    def get(self, lead_id: str) -> SignalState:
        con = connect(self.db_path)
        try:
            row = con.execute(f"SELECT {','.join(LEAD_COLS)} FROM leads WHERE lead_id=?", (lead_id,)).fetchone()
        finally:
            con.close()
        if row is None:
            raise UnknownLead(lead_id)
        return _row_to_state(row)

    def put(self, state: SignalState) -> SignalState:
        con = connect(self.db_path)
        try:
            row = con.execute("SELECT version FROM leads WHERE lead_id=?", (state.lead_id,)).fetchone()
            stored = replace(state, version=row[0] + 1 if row else state.version)
            con.execute(f"INSERT OR REPLACE INTO leads({','.join(LEAD_COLS)}) VALUES({','.join('?' * len(LEAD_COLS))})",
                        _state_values(stored))
            con.commit()
            return stored
        finally:
            con.close()

    def compare_and_swap(self, state: SignalState, expected_version: int) -> Optional[SignalState]:
        stored = replace(state, version=expected_version + 1)
        values = _state_values(stored)
        con = connect(self.db_path)
        try:
            cur = con.execute(
                "UPDATE leads SET status=?, qualification_score=?, sentiment_score=?, engagement_score=?, "
                "previous_engagement_score=?, last_contact_date=?, status_updated_at=?, critical_moments=?, "
                "version=? WHERE lead_id=? AND version=?",
                values[1:] + (state.lead_id, expected_version))
            con.commit()
            if cur.rowcount == 1:
                return stored
            if con.execute("SELECT 1 FROM leads WHERE lead_id=?", (state.lead_id,)).fetchone() is None:
                raise UnknownLead(state.lead_id)
            return None
        finally:
            con.close()

    def lead_ids(self) -> List[str]:
        con = connect(self.db_path)
        try:
            return [r[0] for r in con.execute("SELECT lead_id FROM leads ORDER BY lead_id").fetchall()]
        finally:
            con.close()


class MemoryAuditLog:
    """Append-only action and evaluation records."""

    def __init__(self):
        self._lock = threading.Lock()
        self._actions: List[AuditRecord] = []
        self._evaluations: List[Dict] = []

    def append_action(self, record: AuditRecord) -> None:
        with self._lock:
            self._actions.append(record)

    def append_evaluation(self, result: RuleEvaluationResult) -> None:
        with self._lock:
            self._evaluations.append(result.to_dict())

    def actions(self, lead_id: Optional[str] = None) -> List[AuditRecord]:
        with self._lock:
            return [r for r in self._actions if lead_id is None or r.lead_id == lead_id]

    def evaluations(self, lead_id: Optional[str] = None) -> List[Dict]:
        with self._lock:
            return [dict(e) for e in self._evaluations if lead_id is None or e["lead_id"] == lead_id]

    def last_fired(self, lead_id: str, rule_id: str) -> Optional[datetime]:
        with self._lock:
            for e in reversed(self._evaluations):
                if e["lead_id"] == lead_id and e["rule_id"] == rule_id and e["fired"]:
                    return datetime.fromisoformat(e["timestamp"])
        return None


class SqliteAuditLog:
    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    def append_action(self, r: AuditRecord) -> None:
        con = connect(self.db_path)
        try:
            con.execute("INSERT INTO action_audit(lead_id,rule_id,action,previous_state,new_state,"
                        "trigger_confidences,success,error,created_at) VALUES(?,?,?,?,?,?,?,?,?)",
                        (r.lead_id, r.rule_id, json.dumps(r.action), json.dumps(r.previous_state),
                         json.dumps(r.new_state), json.dumps([list(t) for t in r.trigger_confidences]),
                         int(r.success), r.error, r.timestamp.isoformat()))
            con.commit()
        finally:
            con.close()

    def append_evaluation(self, result: RuleEvaluationResult) -> None:
        con = connect(self.db_path)
        try:
            con.execute("INSERT INTO rule_evaluations(lead_id,rule_id,outcome,fired,payload,created_at) "
                        "VALUES(?,?,?,?,?,?)",
                        (result.lead_id, result.rule_id, result.outcome, int(result.fired),
                         json.dumps(result.to_dict()), result.timestamp.isoformat()))
            con.commit()
        finally:
            con.close()

    def actions(self, lead_id: Optional[str] = None) -> List[AuditRecord]:
        sql = ("SELECT lead_id,rule_id,action,previous_state,new_state,created_at,trigger_confidences,"
               "success,error FROM action_audit")
        args: tuple = ()
        if lead_id is not None:
            sql += " WHERE lead_id=?"
            args = (lead_id,)
        con = connect(self.db_path)
        try:
            rows = con.execute(sql + " ORDER BY audit_id", args).fetchall()
        finally:
            con.close()
        return [AuditRecord(lead_id=lid, rule_id=rid, action=json.loads(act),
                            previous_state=json.loads(prev), new_state=json.loads(new),
                            timestamp=datetime.fromisoformat(ts),
                            trigger_confidences=tuple((k, c) for k, c in json.loads(conf)),
                            success=bool(ok), error=err)
                for lid, rid, act, prev, new, ts, conf, ok, err in rows]

    def evaluations(self, lead_id: Optional[str] = None) -> List[Dict]:
        sql = "SELECT payload FROM rule_evaluations"
        args: tuple = ()
        if lead_id is not None:
            sql += " WHERE lead_id=?"
            args = (lead_id,)
        con = connect(self.db_path)
        try:
            return [json.loads(r[0]) for r in con.execute(sql + " ORDER BY eval_id", args).fetchall()]
        finally:
            con.close()

    def last_fired(self, lead_id: str, rule_id: str) -> Optional[datetime]:
        """When the rule last fired for the lead, across processes sharing the db."""
        con = connect(self.db_path)
        try:
            row = con.execute("SELECT created_at FROM rule_evaluations WHERE lead_id=? AND rule_id=? AND fired=1 "
                              "ORDER BY eval_id DESC LIMIT 1", (lead_id, rule_id)).fetchone()
        finally:
            con.close()
        return _dt(row[0]) if row else None


class SqliteRuleStats:
    """Per-rule fire counters kept in the ``rule_stats`` table.

    Counters are incremented in SQL so several processes can record attempts
    against the same database.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    def record(self, rule_id: str, success: bool, impact: float) -> Tuple[int, int, float]:
        con = connect(self.db_path)
        try:
            con.execute("INSERT OR IGNORE INTO rule_stats(rule_id) VALUES(?)", (rule_id,))
            con.execute("UPDATE rule_stats SET times_triggered=times_triggered+1, successes=successes+?, "
                        "total_impact=total_impact+?, updated_at=? WHERE rule_id=?",
                        (int(success), float(impact), datetime.now(timezone.utc).isoformat(), rule_id))
            con.commit()
            row = con.execute("SELECT times_triggered, successes, total_impact FROM rule_stats WHERE rule_id=?",
                              (rule_id,)).fetchone()
        finally:
            con.close()
        return row[0], row[1], row[2]

    def all(self) -> Dict[str, Tuple[int, int, float]]:
        con = connect(self.db_path)
        try:
            rows = con.execute("SELECT rule_id, times_triggered, successes, total_impact FROM rule_stats").fetchall()
        finally:
            con.close()
        return {r[0]: (r[1], r[2], r[3]) for r in rows}
