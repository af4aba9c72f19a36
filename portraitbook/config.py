# portraitbook/config.py
"""
Environment configuration.

Values are read once into a frozen Settings object. Secrets that only one
dependency needs (gateway token, Gemini key) are optional here and checked
with require() when that dependency is built, so a missing Gemini key does not
take down the training routes.
"""
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from portraitbook.errors import ConfigurationError

load_dotenv(override=False)

DEFAULT_API_BASE = "https://api.replicate.com/v1"
DEFAULT_TRAINER_MODEL = "ostris/flux-dev-lora-trainer"
DEFAULT_TRAINER_VERSION = "26dce37af90b9d997eeb970d92e47de3064d46c300504ae376c75bef6a9022d2"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_TRIGGER_WORD_PREFIX = "STORYCHAR"


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    replicate_api_token: Optional[str]
    replicate_owner: Optional[str]
    gemini_api_key: Optional[str]
    gemini_model: str
    use_inpainting: bool
    replicate_api_base: str
    trainer_model: str
    trainer_version: str
    trigger_word_prefix: str
    training_records_path: Optional[str]
    training_records_max: int
    poll_interval_seconds: float
    gateway_timeout_seconds: float
    prediction_max_wait_seconds: float
    cf_account_id: Optional[str]
    cf_access_key_id: Optional[str]
    cf_secret_access_key: Optional[str]
    cf_r2_bucket_outputs: str
    presign_expiration: int
    log_level: str

    @property
    def r2_endpoint(self) -> Optional[str]:
        return f"https://{self.cf_account_id}.r2.cloudflarestorage.com" if self.cf_account_id else None


def load_settings() -> Settings:
    return Settings(
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN") or None,
        replicate_owner=os.getenv("REPLICATE_OWNER") or None,
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
        gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
        use_inpainting=_parse_bool(os.getenv("USE_INPAINTING"), True),
        replicate_api_base=os.getenv("REPLICATE_API_BASE", DEFAULT_API_BASE).rstrip("/"),
        trainer_model=os.getenv("REPLICATE_TRAINER_MODEL", DEFAULT_TRAINER_MODEL),
        trainer_version=os.getenv("REPLICATE_TRAINER_VERSION", DEFAULT_TRAINER_VERSION),
        trigger_word_prefix=os.getenv("TRIGGER_WORD_PREFIX", DEFAULT_TRIGGER_WORD_PREFIX),
        training_records_path=os.getenv("TRAINING_RECORDS_PATH") or None,
        training_records_max=_parse_int("TRAINING_RECORDS_MAX", 500),
        poll_interval_seconds=_parse_float("POLL_INTERVAL_SECONDS", 5.0),
        gateway_timeout_seconds=_parse_float("GATEWAY_TIMEOUT_SECONDS", 120.0),
        prediction_max_wait_seconds=_parse_float("PREDICTION_MAX_WAIT_SECONDS", 300.0),
        cf_account_id=os.getenv("CF_ACCOUNT_ID") or None,
        cf_access_key_id=os.getenv("CF_ACCESS_KEY_ID") or None,
        cf_secret_access_key=os.getenv("CF_SECRET_ACCESS_KEY") or None,
        cf_r2_bucket_outputs=os.getenv("CF_R2_BUCKET_OUTPUTS", "portraitbook-outputs"),
        presign_expiration=_parse_int("PRESIGN_EXPIRATION", 3600),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def require(value: Optional[str], name: str) -> str:
    """Return value or fail fast with the environment variable that is missing."""
    if not value:
        raise ConfigurationError(f"Missing environment variable {name}")
    return value
