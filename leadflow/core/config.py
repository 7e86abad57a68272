import os
from dotenv import load_dotenv

load_dotenv()

# Transcript segmentation
SEGMENT_DURATION_SECONDS = float(os.getenv("SEGMENT_DURATION_SECONDS", "30"))
OVERLAP_SECONDS = float(os.getenv("OVERLAP_SECONDS", "5"))
MIN_SEGMENT_LENGTH = float(os.getenv("MIN_SEGMENT_LENGTH", "10"))

# Timeline aggregation
CHANGE_THRESHOLD = float(os.getenv("CHANGE_THRESHOLD", "0.3"))
CRITICAL_DROP_THRESHOLD = float(os.getenv("CRITICAL_DROP_THRESHOLD", "0.5"))
MIN_POINT_CONFIDENCE = float(os.getenv("MIN_POINT_CONFIDENCE", "0.3"))

# Segment scoring
SCORER_BACKEND = os.getenv("SCORER_BACKEND", "vader")       # vader|openai
SCORER_TIMEOUT_SECONDS = float(os.getenv("SCORER_TIMEOUT_SECONDS", "10"))
SCORER_CONCURRENCY = int(os.getenv("SCORER_CONCURRENCY", "3"))
SCORER_RETRY_BACKOFF_SECONDS = float(os.getenv("SCORER_RETRY_BACKOFF_SECONDS", "0.5"))
SCORER_THROTTLE_SECONDS = float(os.getenv("SCORER_THROTTLE_SECONDS", "0.1"))
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Rule engine
FIRING_THRESHOLD = float(os.getenv("FIRING_THRESHOLD", "0.6"))
COOLDOWN_HOURS = float(os.getenv("COOLDOWN_HOURS", "24"))
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "5"))

DB_PATH = os.getenv("DB_PATH", "./data/leadflow.db")
RULES_PATH = os.getenv("RULES_PATH", "")                     # empty: built-in rules
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
