SEGMENT_SYSTEM_PROMPT = """You analyse sales call transcripts. You will be given one time window of a call.
Judge ONLY the sentiment of the LEAD (the prospect), not the agent.
Respond with JSON only, no prose, no code fences.
"""

SEGMENT_USER_TEMPLATE = """=== WINDOW ===
{segment_text}

{context}

Respond with exactly this JSON:
{{
  "sentiment": number between -1.0 and 1.0,
  "confidence": number between 0.0 and 1.0,
  "dominant_emotion": "happy|excited|interested|neutral|confused|frustrated|angry|worried|skeptical|disappointed",
  "key_phrases": ["short quote", "short quote"]
}}
"""

CONTEXT_TEMPLATE = "Lead: {name} from {company}, current status: {status}"
