import json
import pytest
from leadflow.core.parser import parse_file, parse_text, transcript_from_dict, normalize_role
from leadflow.core.errors import InputError

CALL = """[00:00] Sam (agent): Hi Dana, thanks for taking the call.
[00:07] Dana (customer): Happy to. We're looking at options this quarter.
[00:31] Sam (agent): Great, let me walk you through pricing.
this line is not part of the transcript
[01:02] Dana (prospect): That sounds too expensive for us right now.
"""


def test_parse_text_file(tmp_path):
    p = tmp_path / "call.txt"
    p.write_text(CALL, encoding="utf-8")
    t = parse_file(str(p))
    assert len(t.messages) == 4
    assert [m.role for m in t.messages] == ["agent", "lead", "agent", "lead"]
    assert t.messages[-1].timestamp == 62
    assert t.duration == 62
    assert t.total_words > 0
    assert all(m.timestamp >= 0 for m in t.messages)


def test_messages_json_format(tmp_path):
    data = {"messages": [
        {"role": "agent", "content": "Hello", "timestamp": 0},
        {"role": "lead", "content": "Hi there", "timestamp": 4},
    ], "duration": 90}
    p = tmp_path / "call.json"
    p.write_text(json.dumps(data), encoding="utf-8")
    t = parse_file(str(p))
    assert t.duration == 90
    assert t.total_words == 3


def test_voice_provider_format_estimates_missing_timestamps():
    data = {
        "transcript": {"raw": [
            {"role": "assistant", "message": "Hi, this is Sam"},
            {"role": "user", "message": "Oh hello"},
            {"role": "user", "message": "Tell me more"},
        ]},
        "conversationDetails": {"duration": 20},
    }
    t = transcript_from_dict(data)
    assert [m.role for m in t.messages] == ["agent", "lead", "lead"]
    assert [m.timestamp for m in t.messages] == [0, 30, 60]
    # messages past the declared duration stretch it
    assert t.duration == 60


def test_unknown_roles_become_system():
    assert normalize_role("Narrator") == "system"
    assert normalize_role("Customer") == "lead"
    assert parse_text("[00:01] Moderator: recording started").messages[0].role == "system"


def test_invalid_inputs(tmp_path):
    with pytest.raises(InputError):
        transcript_from_dict({"foo": []})
    with pytest.raises(InputError):
        parse_file(str(tmp_path / "missing.txt"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(InputError):
        parse_file(str(bad))
