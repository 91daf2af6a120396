"""
Body-Impact Configuration
===========================
Report analysis and anatomical-mapping pipeline
- Default backend: Anthropic Claude API
- Alternatives: OpenAI (vision) or local MedGemma 4B
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Project root: directory containing this config.py file
PROJECT_ROOT = str(Path(__file__).resolve().parent)

# Load .env file (override=True to ensure .env values take precedence)
load_dotenv(override=True)

# --- External capability (LLM) ---
LLM_BACKEND = os.environ.get("LLM_BACKEND", "anthropic")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o")
MAX_TOKENS = 4000
TEMPERATURE = 0.1  # Low temperature for extraction precision
INFERENCE_TEMPERATURE = 0.3
LLM_TIMEOUT_SEC = float(os.environ.get("LLM_TIMEOUT_SEC", "120"))

# --- Report selection / optimization ---
MAX_REPORTS_TO_SCAN = 10          # expensive document extraction cap
MAX_PARAMETERS_FOR_INFERENCE = 50 # parameters sent to condition inference
MAX_REPORT_AGE_DAYS = 365         # 0 disables the age filter
PRIORITIZE_RECENT = True
RESCAN_MAX_AGE_DAYS = 30          # re-scan guard window

# --- Batch extraction pacing (rate limits) ---
SCAN_BATCH_SIZE = 3
SCAN_BATCH_DELAY_SEC = 2.0

# Severity scores for aggregation (max wins)
SEVERITY_SCORES = {"low": 1, "medium": 2, "high": 3}
DEFAULT_SEVERITY = "low"
DEFAULT_CONFIDENCE = 0.5

# Snapshot metadata
MODEL_VERSION = "1.0"

# --- Blob store (report files) ---
REPORTS_BUCKET = os.environ.get("REPORTS_BUCKET")
S3_ENDPOINT_URL = os.environ.get("S3_ENDPOINT_URL")
AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")
SIGNED_URL_TTL_SEC = 3600
BLOB_FETCH_TIMEOUT_SEC = 60

# --- Paths (relative to PROJECT_ROOT) ---
KNOWLEDGE_DB_PATH = os.path.join(PROJECT_ROOT, "knowledge")
PATTERN_CACHE_PATH = os.environ.get(
    "PATTERN_CACHE_PATH", os.path.join(PROJECT_ROOT, "data", "pattern_cache.db")
)
LOGS_PATH = os.path.join(PROJECT_ROOT, "logs")
