from typing import List, Dict

OBJECTION = "objection"
BUYING_SIGNAL = "buying_signal"

CUE_KEYWORDS: Dict[str, List[str]] = {
    OBJECTION: ["too expensive", "too much", "not interested", "no budget", "concern", "risk",
                "not sure", "already have", "competitor", "cheaper", "not the right time",
                "call me later", "pushback", "blocker", "problem", "don't need"],
    BUYING_SIGNAL: ["how much", "pricing", "price", "contract", "signature", "sign up", "when can we start",
                    "next step", "demo", "trial", "send me the proposal", "send the proposal",
                    "onboarding", "implementation", "purchase", "budget approved", "let's do it"],
}


def find_cues(text: str) -> List[str]:
    """Vocabulary entries present in ``text``, in vocabulary order."""
    t = text.lower()
    out: List[str] = []
    for kws in CUE_KEYWORDS.values():
        for k in kws:
            if k in t and k not in out:
                out.append(k)
    return out


def tag_text(text: str) -> List[str]:
    t = text.lower()
    out = set()
    for cue, kws in CUE_KEYWORDS.items():
        for k in kws:
            if k in t:
                out.add(cue)
                break
    return sorted(out)
