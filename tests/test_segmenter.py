import pytest
from leadflow.core.models import Message, Transcript
from leadflow.core.segmenter import segment_transcript
from leadflow.core.errors import InputError


def _transcript(times, duration):
    roles = ["agent", "lead"]
    msgs = [Message(role=roles[i % 2], content=f"message {i}", timestamp=float(t))
            for i, t in enumerate(times)]
    return Transcript(messages=msgs, duration=float(duration))


def test_windows_cover_call():
    t = _transcript([0, 12, 28, 40, 55, 61], 61)
    segs = segment_transcript(t, 30, 5, 10)
    assert [(s.start, s.end) for s in segs] == [(0, 30), (25, 55), (50, 61)]
    assert segs[0].start == 0 and segs[-1].end == t.duration
    for prev, cur in zip(segs, segs[1:]):
        assert cur.start <= prev.end
    for m in t.messages:
        assert any(s.start <= m.timestamp <= s.end and m in s.messages for s in segs)


def test_overlap_messages_belong_to_both_windows():
    t = _transcript([0, 27, 40], 45)
    segs = segment_transcript(t, 30, 5, 10)
    at_27 = [s.index for s in segs if any(m.timestamp == 27 for m in s.messages)]
    assert at_27 == [0, 1]


def test_short_covered_tail_is_folded_into_previous_window():
    t = _transcript([0, 10, 20, 30, 45, 50], 52)
    segs = segment_transcript(t, 30, 5, 10)
    assert [(s.start, s.end) for s in segs] == [(0, 30), (25, 52)]
    assert segs[-1].messages[-1].timestamp == 50


def test_short_tail_with_its_own_messages_is_kept():
    t = _transcript([0, 10, 30, 57], 58)
    segs = segment_transcript(t, 30, 5, 10)
    assert segs[-1].start == 50 and segs[-1].end == 58
    assert [m.timestamp for m in segs[-1].messages] == [57]


def test_empty_or_zero_duration():
    assert segment_transcript(Transcript(messages=[], duration=30)) == []
    assert segment_transcript(_transcript([0], 0)) == []


def test_overlap_not_shorter_than_window():
    with pytest.raises(InputError):
        segment_transcript(_transcript([0, 5], 10), 10, 10, 5)
    with pytest.raises(InputError):
        segment_transcript(_transcript([0, 5], 10), 10, -1, 5)


def test_negative_timestamp():
    with pytest.raises(InputError):
        segment_transcript(_transcript([-3, 5], 10), 30, 5, 10)
