import os
import re
from typing import List

from dotenv import load_dotenv

# Values are read on every call so tests and long-lived workers see env changes.
load_dotenv()

TRUTHY = ("1", "true", "yes", "on")


def _flag(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in TRUTHY


def normalize_phone(value) -> str:
    """Last 10 digits of a phone number, empty for client addresses and blanks."""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))[-10:]


def business_numbers() -> List[str]:
    raw = os.getenv("BUSINESS_NUMBERS") or os.getenv("TWILIO_BUSINESS_NUMBERS") or ""
    numbers = [normalize_phone(p) for p in raw.split(",")]
    return [n for n in numbers if n]


def auto_process_enabled() -> bool:
    return _flag("CI_AUTO_PROCESS")


def intelligence_service_sid() -> str:
    return (os.getenv("TWILIO_INTELLIGENCE_SERVICE_SID") or "").strip()


def public_base_url() -> str:
    return (os.getenv("PUBLIC_BASE_URL") or "http://localhost:8000").rstrip("/")


def recording_callback_url() -> str:
    return f"{public_base_url()}/api/twilio/recording"


def validate_signatures() -> bool:
    return _flag("TWILIO_VALIDATE_SIGNATURES")


def generative_ai_configured() -> bool:
    for key in ("GROQ_API_KEY", "OPENAI_API_KEY"):
        value = os.getenv(key)
        if value and value.strip():
            return True
    return False


def poll_interval_seconds() -> float:
    try:
        return float(os.getenv("TRANSCRIPT_POLL_INTERVAL_SECONDS", "6"))
    except ValueError:
        return 6.0


def poll_max_attempts() -> int:
    try:
        return max(1, int(os.getenv("TRANSCRIPT_POLL_MAX_ATTEMPTS", "20")))
    except ValueError:
        return 20
