import logging
from typing import List
from .models import Transcript, Segment
from .errors import InputError
from .config import SEGMENT_DURATION_SECONDS, OVERLAP_SECONDS, MIN_SEGMENT_LENGTH

logger = logging.getLogger(__name__)


def validate_window(segment_duration: float, overlap: float) -> None:
    if segment_duration <= 0:
        raise InputError(f"segment duration must be positive, got {segment_duration}")
    if overlap < 0:
        raise InputError(f"overlap must not be negative, got {overlap}")
    if overlap >= segment_duration:
        # the window would never advance
        raise InputError(f"overlap ({overlap}s) must be shorter than the segment ({segment_duration}s)")


def segment_transcript(transcript: Transcript,
                       segment_duration: float = SEGMENT_DURATION_SECONDS,
                       overlap: float = OVERLAP_SECONDS,
                       min_length: float = MIN_SEGMENT_LENGTH) -> List[Segment]:
    """Split a transcript into overlapping [t, t + segment_duration] windows.

    Windows advance by ``segment_duration - overlap`` until they pass the end of
    the call. A trailing window shorter than ``min_length`` is dropped only when
    every message in it is already part of another window; its time range is
    then folded into the previous window so the segments still cover the call.
    """
    validate_window(segment_duration, overlap)
    msgs = transcript.messages
    if not msgs or transcript.duration <= 0:
        return []
    if any(m.timestamp < 0 for m in msgs):
        raise InputError("message timestamps must not be negative")

    duration = max(transcript.duration, max(m.timestamp for m in msgs))
    step = segment_duration - overlap

    def members(start: float, end: float) -> List[int]:
        return [i for i, m in enumerate(msgs) if start <= m.timestamp <= end]

    # windows: [start, end, message indexes]
    windows = []
    t = 0.0
    while t < duration:
        end = min(t + segment_duration, duration)
        windows.append([t, end, members(t, end)])
        t += step

    i = len(windows) - 1
    while i > 0:
        start, end, idxs = windows[i]
        if end - start < min_length:
            covered = set()
            for j, w in enumerate(windows):
                if j != i:
                    covered.update(w[2])
            if set(idxs) <= covered:
                prev = windows[i - 1]
                prev[1] = max(prev[1], end)
                prev[2] = members(prev[0], prev[1])
                del windows[i]
        i -= 1

    segments = [Segment(index=n, start=s, end=e, messages=tuple(msgs[k] for k in idxs))
                for n, (s, e, idxs) in enumerate(windows)]
    logger.debug("Segmented %.1fs transcript (%d messages) into %d windows",
                 duration, len(msgs), len(segments))
    return segments
