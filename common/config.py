import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

# Global cap on jobs in PROCESSING
MAX_CONCURRENCY = int(os.getenv("MAX_CONCURRENCY", "5"))

# Per-attempt watchdog in seconds; unset means an extraction call may run forever
JOB_TIMEOUT = float(os.getenv("JOB_TIMEOUT")) if os.getenv("JOB_TIMEOUT") else None

PREVIEW_DIR = Path(os.getenv("PREVIEW_DIR", str(BASE_DIR / "data" / "previews")))
PREVIEW_SIZE = int(os.getenv("PREVIEW_SIZE", "256"))

EXTRACTION_WEBHOOK_URL = os.getenv("EXTRACTION_WEBHOOK_URL", "http://localhost:8081/extract")
EXTRACTION_TIMEOUT = float(os.getenv("EXTRACTION_TIMEOUT", "30"))
EXTRACTION_MAX_RETRIES = int(os.getenv("EXTRACTION_MAX_RETRIES", "2"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
