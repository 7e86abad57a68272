import json
import re
from typing import Any, Dict, Optional
from .config import OPENAI_API_KEY, OPENAI_MODEL
from .prompts import SEGMENT_SYSTEM_PROMPT, SEGMENT_USER_TEMPLATE, CONTEXT_TEMPLATE
from .models import LeadContext
from .errors import ScorerError

FENCE_RE = re.compile(r"```(?:json)?")


def _format_context(context: Optional[LeadContext]) -> str:
    if context is None:
        return ""
    return CONTEXT_TEMPLATE.format(name=context.name,
                                   company=context.company or "an unspecified company",
                                   status=context.current_status)


def parse_json_reply(text: str) -> Dict[str, Any]:
    clean = FENCE_RE.sub("", text or "").strip()
    try:
        data = json.loads(clean)
    except json.JSONDecodeError as e:
        raise ScorerError(f"model reply is not JSON: {e}") from e
    if not isinstance(data, dict) or "sentiment" not in data:
        raise ScorerError("model reply has no sentiment field")
    return data


class OpenAIScorer:
    """Sentiment capability backed by an OpenAI model."""

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL, client=None):
        if client is None:
            if not api_key:
                raise ScorerError("OPENAI_API_KEY is not set")
            from openai import OpenAI
            client = OpenAI(api_key=api_key)
        self.client = client
        self.model = model

    def score(self, segment_text: str, context: Optional[LeadContext] = None) -> Dict[str, Any]:
        prompt = SEGMENT_USER_TEMPLATE.format(segment_text=segment_text, context=_format_context(context))
        resp = self.client.responses.create(
            model=self.model,
            input=[
                {"role": "system", "content": SEGMENT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ]
        )
        return parse_json_reply(resp.output_text or "")
