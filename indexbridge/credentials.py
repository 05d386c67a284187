"""Provider selection, credential resolution and configuration reporting."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

from indexbridge.config import INTERNAL_EMAIL_DOMAIN, LLAMACLOUD_MIN_KEY_LENGTH
from indexbridge.errors import ConfigurationError
from indexbridge.models import (
    SUPPORTED_PROVIDERS,
    BedrockCredentials,
    LlamaCloudCredentials,
    ProviderCredentials,
)

log = logging.getLogger(__name__)

_AWS_REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d$")
_BEDROCK_FIELDS = (
    ("AWS_ACCESS_KEY_ID", "access_key_id"),
    ("AWS_SECRET_ACCESS_KEY", "secret_access_key"),
    ("AWS_REGION", "region"),
)


def _legal_values() -> str:
    return ", ".join(f'"{name}"' for name in SUPPORTED_PROVIDERS)


def get_provider_type() -> str:
    """Return the configured provider selector or raise ConfigurationError."""
    raw = os.getenv("INDEX_PROVIDER", "")
    provider = raw.strip().lower()
    if not provider:
        raise ConfigurationError(
            f"INDEX_PROVIDER environment variable is not set. Set it to one of: {_legal_values()}."
        )
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(
            f'Unsupported provider type: "{raw.strip()}". Supported types are: {_legal_values()}.'
        )
    return provider


def _is_internal_email(user_email: str | None, domain: str) -> bool:
    if not user_email or "@" not in user_email or not domain:
        return False
    email_domain = user_email.rsplit("@", 1)[1].strip().lower()
    return email_domain == domain.lstrip("@").strip().lower()


def get_llamacloud_api_key(user_email: str | None = None) -> str:
    """Pick the internal key for internal users when one is configured, else the regular key."""
    domain = os.getenv("INTERNAL_EMAIL_DOMAIN", INTERNAL_EMAIL_DOMAIN)
    internal_key = os.getenv("LLAMACLOUD_API_KEY_INTERNAL", "")
    if internal_key and _is_internal_email(user_email, domain):
        return internal_key

    api_key = os.getenv("LLAMACLOUD_API_KEY", "")
    if not api_key:
        raise ConfigurationError("LLAMACLOUD_API_KEY is required when INDEX_PROVIDER=llamacloud.")
    return api_key


def get_bedrock_credentials() -> BedrockCredentials:
    values = {}
    for env_name, field_name in _BEDROCK_FIELDS:
        value = os.getenv(env_name, "").strip()
        if not value:
            raise ConfigurationError(f"{env_name} is required when INDEX_PROVIDER=bedrock.")
        values[field_name] = value
    return BedrockCredentials(**values)


def resolve_credentials(
    provider_type: str | None = None,
    user_email: str | None = None,
) -> ProviderCredentials:
    """Resolve the credential bundle for ``provider_type`` (default: the configured one)."""
    provider = provider_type or get_provider_type()
    if provider == "llamacloud":
        return LlamaCloudCredentials(api_key=get_llamacloud_api_key(user_email))
    if provider == "bedrock":
        return get_bedrock_credentials()
    raise ConfigurationError(
        f'Unsupported provider type: "{provider}". Supported types are: {_legal_values()}.'
    )


@dataclass
class ValidationReport:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def error(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)

    def render(self) -> str:
        lines: list[str] = []
        if self.errors:
            lines.append("Configuration errors:")
            lines.extend(f"  - {item}" for item in self.errors)
        if self.warnings:
            lines.append("Configuration warnings:")
            lines.extend(f"  - {item}" for item in self.warnings)
        return "\n".join(lines)


def _check_llamacloud(report: ValidationReport) -> None:
    api_key = os.getenv("LLAMACLOUD_API_KEY", "")
    if not api_key:
        report.error("LLAMACLOUD_API_KEY environment variable is not set")
    elif len(api_key) < LLAMACLOUD_MIN_KEY_LENGTH:
        report.error("LLAMACLOUD_API_KEY appears to be invalid (too short)")

    if os.getenv("LLAMACLOUD_API_KEY_INTERNAL") and not os.getenv(
        "INTERNAL_EMAIL_DOMAIN", INTERNAL_EMAIL_DOMAIN
    ):
        report.warnings.append(
            "LLAMACLOUD_API_KEY_INTERNAL is set but INTERNAL_EMAIL_DOMAIN is not configured"
        )


def _check_bedrock(report: ValidationReport) -> None:
    for env_name, _ in _BEDROCK_FIELDS:
        if not os.getenv(env_name, "").strip():
            report.error(f"{env_name} environment variable is not set")

    region = os.getenv("AWS_REGION", "").strip()
    if region and not _AWS_REGION_PATTERN.match(region):
        report.warnings.append(
            f'AWS_REGION "{region}" may not be valid. Expected format: us-east-1, eu-west-1, etc.'
        )


def validate_provider_configuration() -> ValidationReport:
    report = ValidationReport()
    try:
        provider = get_provider_type()
    except ConfigurationError as exc:
        report.error(str(exc))
        return report

    if provider == "llamacloud":
        _check_llamacloud(report)
    else:
        _check_bedrock(report)
    for warning in report.warnings:
        log.warning("%s", warning)
    return report


def assert_valid_provider_configuration() -> None:
    report = validate_provider_configuration()
    if not report.valid:
        raise ConfigurationError(report.render())
