import re
import json
from pathlib import Path
from typing import Any, Dict, List
from .models import Message, Transcript, AGENT, LEAD, SYSTEM, ROLES
from .errors import InputError

LINE_RE = re.compile(r"^\[(\d{1,3}):(\d{2})\]\s([^:]+):\s(.*)$")  # [mm:ss] Speaker (role): text

ROLE_ALIASES = {
    "customer": LEAD, "prospect": LEAD, "client": LEAD, "buyer": LEAD, "user": LEAD,
    "rep": AGENT, "ae": AGENT, "sdr": AGENT, "seller": AGENT, "assistant": AGENT, "bot": AGENT,
}

# seconds between messages when a source has no timestamps
ESTIMATED_GAP_SEC = 30


def parse_timestamp(mm: str, ss: str) -> int:
    return int(mm) * 60 + int(ss)


def normalize_role(raw: str) -> str:
    r = (raw or "").strip().lower()
    if r in ROLES:
        return r
    return ROLE_ALIASES.get(r, SYSTEM)


def _count_words(messages: List[Message]) -> int:
    return sum(len(m.content.split()) for m in messages)


def _finish(messages: List[Message], duration: float, total_words: int = 0) -> Transcript:
    messages = sorted(messages, key=lambda m: m.timestamp)
    last = messages[-1].timestamp if messages else 0.0
    # a message past the declared duration still belongs to the call
    duration = max(float(duration or 0.0), last)
    return Transcript(messages=messages, duration=duration,
                      total_words=total_words or _count_words(messages))


def parse_text(text: str) -> Transcript:
    messages: List[Message] = []
    for line in text.splitlines():
        m = LINE_RE.match(line.strip())
        if not m:
            continue
        mm, ss, speaker, content = m.groups()
        # Role from the parenthesised token if present, e.g. "Dana (customer)"
        role = speaker
        r = re.search(r"\(([^)]+)\)", speaker)
        if r:
            role = r.group(1)
        messages.append(Message(role=normalize_role(role), content=content.strip(),
                                timestamp=float(parse_timestamp(mm, ss))))
    return _finish(messages, 0.0)


def _messages_from_raw(raw: List[Dict[str, Any]]) -> List[Message]:
    out = []
    for i, msg in enumerate(raw):
        ts = msg.get("timestamp")
        if ts is None:
            ts = msg.get("time_in_call_secs")
        if ts is None:
            ts = i * ESTIMATED_GAP_SEC
        content = msg.get("content") or msg.get("message") or ""
        out.append(Message(role=normalize_role(msg.get("role", SYSTEM)),
                           content=str(content), timestamp=float(ts)))
    return out


def transcript_from_dict(data: Dict[str, Any]) -> Transcript:
    """Accepts {"messages": [...], "duration"} or the voice-provider
    {"transcript": {"raw": [...]}, "conversationDetails": {"duration"}} shape."""
    if isinstance(data.get("messages"), list):
        messages = _messages_from_raw(data["messages"])
        return _finish(messages, data.get("duration") or 0.0, data.get("totalWords") or 0)
    raw = (data.get("transcript") or {}).get("raw") if isinstance(data.get("transcript"), dict) else None
    if isinstance(raw, list):
        details = data.get("conversationDetails") or {}
        return _finish(_messages_from_raw(raw), details.get("duration") or 0.0)
    raise InputError("Invalid transcript format")


def parse_file(path: str) -> Transcript:
    p = Path(path)
    if not p.exists():
        raise InputError(f"Transcript not found: {path}")
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InputError(f"Transcript {p.name} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InputError("Invalid transcript format")
        return transcript_from_dict(data)
    return parse_text(text)
