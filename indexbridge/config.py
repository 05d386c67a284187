"""Centralized configuration for providers, transport and the multi-step pipeline."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from indexbridge.errors import ConfigurationError
from indexbridge.models import MultiStepConfig

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

# Provider selection and credentials
INDEX_PROVIDER = os.getenv("INDEX_PROVIDER", "")

LLAMACLOUD_API_KEY = os.getenv("LLAMACLOUD_API_KEY", "")
LLAMACLOUD_API_KEY_INTERNAL = os.getenv("LLAMACLOUD_API_KEY_INTERNAL", "")
INTERNAL_EMAIL_DOMAIN = os.getenv("INTERNAL_EMAIL_DOMAIN", "")
LLAMACLOUD_BASE_URL = os.getenv("LLAMACLOUD_BASE_URL", "https://api.cloud.llamaindex.ai/api/v1")
LLAMACLOUD_MIN_KEY_LENGTH = 10

AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "")
AWS_REGION = os.getenv("AWS_REGION", "")

# Transport and retrieval
INDEX_RETRY_ATTEMPTS = int(os.getenv("INDEX_RETRY_ATTEMPTS", "3"))
INDEX_REQUEST_TIMEOUT_S = float(os.getenv("INDEX_REQUEST_TIMEOUT_S", "30"))
RETRIEVER_TOP_K = int(os.getenv("RETRIEVER_TOP_K", "10"))
BEDROCK_PAGE_SIZE = 100

# Text completion
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
OFFLINE_MODE = os.getenv("OFFLINE_MODE", "0").strip().lower() in {"1", "true", "yes"}

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.2"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "4"))
LLM_BACKOFF_BASE_S = float(os.getenv("LLM_BACKOFF_BASE_S", "1.0"))
LLM_BACKOFF_MAX_S = float(os.getenv("LLM_BACKOFF_MAX_S", "15.0"))

_MULTISTEP_ENV = {
    "max_steps": "MULTISTEP_MAX_STEPS",
    "timeout_per_step": "MULTISTEP_TIMEOUT_PER_STEP_MS",
    "min_confidence_threshold": "MULTISTEP_MIN_CONFIDENCE",
    "enable_detailed_logging": "MULTISTEP_DETAILED_LOGGING",
    "fallback_to_single_step": "MULTISTEP_FALLBACK",
}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def load_multistep_config(overrides: dict | None = None) -> MultiStepConfig:
    """Build a validated MultiStepConfig from MULTISTEP_* variables and overrides.

    Out-of-range or unparsable values raise ConfigurationError, so a bad setting
    is rejected before any pipeline step executes.
    """
    values: dict = {}
    for field, env_name in _MULTISTEP_ENV.items():
        raw = os.getenv(env_name)
        if raw is not None and raw.strip():
            values[field] = raw.strip()
    values.update(overrides or {})
    try:
        return MultiStepConfig.model_validate(values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid multi-step configuration: {problems}") from exc
