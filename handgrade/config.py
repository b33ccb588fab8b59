"""
Configuration management for the Handgrade backend.
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Server configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
DEBUG = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes", "on")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Model defaults
DEFAULT_MODEL_NAME = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"

# Regrade tokens
DEFAULT_REGRADE_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_FREE_REGRADES = 2

# Upload validation (applied before the pipeline sees any file)
ALLOWED_MIME_TYPES = [
    'image/jpeg',
    'image/png',
    'image/gif',
    'image/webp',
    'image/heic',
    'image/heif',
    'application/pdf',
]
MAX_SINGLE_FILE_SIZE = 4 * 1024 * 1024
MAX_TOTAL_SIZE = 4 * 1024 * 1024
MAX_FILES_COUNT = 10
MAX_LABELS_COUNT = 10
MAX_LABEL_LENGTH = 50

SECRET_KEYS = (
    'gemini_api_key',
    'openai_api_key',
    'anthropic_api_key',
    'regrade_token_secret',
    'supabase_service_key',
    'supabase_jwt_secret',
)


def _env_str(name, default=""):
    return os.getenv(name, default) or default


def _env_int(name, default, minimum=1):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _env_float(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration class.

    Values are read from the environment when the instance is created, so a
    fresh ``Config()`` picks up anything changed after import.
    """

    def __init__(self):
        # API keys
        self.gemini_api_key = _env_str("GEMINI_API_KEY")
        self.openai_api_key = _env_str("OPENAI_API_KEY")
        self.anthropic_api_key = _env_str("ANTHROPIC_API_KEY")

        # Models
        self.model_name = _env_str("MODEL_NAME", DEFAULT_MODEL_NAME)
        self.ocr_model_name = _env_str("OCR_MODEL_NAME")
        self.rate_limit_fallback_model = _env_str("RATE_LIMIT_FALLBACK_MODEL", DEFAULT_FALLBACK_MODEL)

        # Pipeline
        self.strict_transcription = _env_bool("STRICT_TRANSCRIPTION", True)
        self.ocr_timeout_seconds = _env_float("OCR_TIMEOUT_SECONDS", 180.0)
        self.grading_timeout_seconds = _env_float("GRADING_TIMEOUT_SECONDS", 150.0)
        self.request_timeout_seconds = _env_float("REQUEST_TIMEOUT_SECONDS", 300.0)
        self.label_concurrency = _env_int("LABEL_CONCURRENCY", 1)
        self.grading_queue_concurrency = _env_int("GRADING_QUEUE_CONCURRENCY", 2)
        self.grading_queue_max_length = _env_int("GRADING_QUEUE_MAX_LENGTH", 3, minimum=0)
        self.grading_queue_wait_seconds = _env_float("GRADING_QUEUE_WAIT_SECONDS", 120.0)

        # Rate limiting
        self.grading_rate_limit = _env_int("GRADING_RATE_LIMIT", 5)
        self.grading_rate_window_seconds = _env_float("GRADING_RATE_WINDOW_SECONDS", 60.0)
        self.grading_burst_limit = _env_int("GRADING_BURST_LIMIT", 2)
        self.grading_burst_window_seconds = _env_float("GRADING_BURST_WINDOW_SECONDS", 10.0)

        # Regrade tokens
        self.regrade_token_secret = _env_str("REGRADE_TOKEN_SECRET")
        self.regrade_token_ttl_seconds = _env_int("REGRADE_TOKEN_TTL_SECONDS", DEFAULT_REGRADE_TOKEN_TTL_SECONDS)
        self.max_free_regrades = _env_int("MAX_FREE_REGRADES", DEFAULT_MAX_FREE_REGRADES, minimum=0)

        # Supabase
        self.supabase_url = _env_str("SUPABASE_URL")
        self.supabase_service_key = _env_str("SUPABASE_SERVICE_KEY")
        self.supabase_jwt_secret = _env_str("SUPABASE_JWT_SECRET")

        self.debug = _env_bool("DEBUG", DEBUG)

    @classmethod
    def from_env(cls):
        return cls()

    @property
    def supabase_configured(self):
        return bool(self.supabase_url and self.supabase_service_key)

    def to_dict(self):
        """Return the configuration with secrets masked."""
        data = dict(vars(self))
        for key in SECRET_KEYS:
            if data.get(key):
                data[key] = "********"
        return data

    def update(self, data: dict):
        for key, value in data.items():
            if hasattr(self, key):
                setattr(self, key, value)


# Global config instance
config = Config()
