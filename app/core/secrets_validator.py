"""Startup checks for secrets and sensitive configuration.

Missing or weak secrets are reported, never fatal: the service starts and the
affected feature fails closed (unauthenticated requests are rejected, webhooks
without a configured secret answer 500).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any, Tuple, Optional

from app.log.logging import logger


class SecretSeverity(str, Enum):
    CRITICAL = "critical"  # Service cannot run safely
    WARNING = "warning"    # A feature will be unavailable or weakened
    INFO = "info"


@dataclass
class ValidationIssue:
    setting: str
    message: str
    severity: SecretSeverity
    recommendation: Optional[str] = None


class SecretsValidator:
    """Validate secrets held by a settings object."""

    PLACEHOLDER_PATTERNS = [
        r"your[-_]?secret",
        r"change[-_]?me",
        r"placeholder",
        r"default[-_]?key",
        r"xxx+",
        r"example",
    ]

    MIN_LENGTHS = {
        "AUTH_JWT_SECRET": 32,
        "INTERNAL_API_KEY": 32,
        "STRIPE_WEBHOOK_SECRET": 20,
    }

    def __init__(self, settings):
        self.settings = settings
        self.issues: List[ValidationIssue] = []
        self.is_production = settings.environment.lower() == "production"

    def validate_all(self) -> Tuple[bool, Dict[str, Any]]:
        """
        Run every check.

        Returns:
            Tuple of (is_valid, details); valid means no critical issue.
        """
        self.issues = []

        self._check_secret(
            "AUTH_JWT_SECRET", self.settings.AUTH_JWT_SECRET,
            missing=SecretSeverity.CRITICAL,
            recommendation="Copy the JWT secret from the identity provider project settings"
        )
        self._validate_database_url()
        self._check_secret(
            "INTERNAL_API_KEY", self.settings.INTERNAL_API_KEY,
            missing=SecretSeverity.WARNING,
            recommendation="Generate one with: openssl rand -hex 32"
        )
        self._validate_stripe_secrets()
        self._check_secret(
            "FACEPP_API_KEY", self.settings.FACEPP_API_KEY,
            missing=SecretSeverity.WARNING,
            recommendation="Face swap requests fail until this and FACEPP_API_SECRET are set"
        )

        by_severity = {severity: 0 for severity in SecretSeverity}
        for issue in self.issues:
            by_severity[issue.severity] += 1

        is_valid = by_severity[SecretSeverity.CRITICAL] == 0
        return is_valid, {
            "valid": is_valid,
            "is_production": self.is_production,
            "critical_count": by_severity[SecretSeverity.CRITICAL],
            "warning_count": by_severity[SecretSeverity.WARNING],
            "info_count": by_severity[SecretSeverity.INFO],
            "issues": [
                {
                    "setting": i.setting,
                    "message": i.message,
                    "severity": i.severity.value,
                    "recommendation": i.recommendation
                }
                for i in self.issues
            ]
        }

    def _is_placeholder(self, value: str) -> bool:
        return any(re.search(pattern, value, re.IGNORECASE) for pattern in self.PLACEHOLDER_PATTERNS)

    def _add_issue(self, setting: str, message: str, severity: SecretSeverity,
                   recommendation: Optional[str] = None):
        self.issues.append(ValidationIssue(setting, message, severity, recommendation))

    def _check_secret(self, name: str, value: str, missing: SecretSeverity,
                      recommendation: Optional[str] = None):
        if not value:
            self._add_issue(name, f"{name} is not set", missing, recommendation)
            return

        weak = SecretSeverity.CRITICAL if self.is_production else SecretSeverity.WARNING
        if self._is_placeholder(value):
            self._add_issue(name, f"{name} appears to be a placeholder value", weak, recommendation)
            return

        min_length = self.MIN_LENGTHS.get(name)
        if min_length and len(value) < min_length:
            self._add_issue(
                name,
                f"{name} is too short ({len(value)} chars, minimum {min_length})",
                weak,
                recommendation
            )

    def _validate_database_url(self):
        db_url = self.settings.database_url
        if not db_url:
            self._add_issue(
                "DATABASE_URL",
                "Database URL is not set",
                SecretSeverity.CRITICAL,
                "Set DATABASE_URL to a postgresql+asyncpg:// connection string"
            )
            return
        if self.is_production and db_url.startswith("sqlite"):
            self._add_issue(
                "DATABASE_URL",
                "SQLite cannot provide row locks for the credit ledger",
                SecretSeverity.CRITICAL,
                "Use PostgreSQL in production"
            )

    def _validate_stripe_secrets(self):
        stripe_key = self.settings.STRIPE_SECRET_KEY
        if not stripe_key:
            self._add_issue(
                "STRIPE_SECRET_KEY",
                "Stripe secret key is not set",
                SecretSeverity.WARNING,
                "Customer linking and webhook customer lookups will fail"
            )
        elif stripe_key.startswith("sk_test_") and self.is_production:
            self._add_issue(
                "STRIPE_SECRET_KEY",
                "Using Stripe test key in production",
                SecretSeverity.CRITICAL,
                "Use a live Stripe key (sk_live_) in production"
            )

        self._check_secret(
            "STRIPE_WEBHOOK_SECRET", self.settings.STRIPE_WEBHOOK_SECRET,
            missing=SecretSeverity.WARNING,
            recommendation="Payment webhooks are rejected until the signing secret is set"
        )


def validate_secrets_on_startup(settings) -> Tuple[bool, Dict[str, Any]]:
    """
    Validate secrets at application startup and log the outcome.

    Args:
        settings: The application settings object

    Returns:
        Tuple of (is_valid, details)
    """
    is_valid, details = SecretsValidator(settings).validate_all()

    if not is_valid:
        logger.error(
            "Secrets validation failed with critical issues",
            event_type="secrets_validation_failed",
            critical_count=details["critical_count"],
            warning_count=details["warning_count"]
        )
    elif details["warning_count"]:
        logger.warning(
            "Secrets validation passed with warnings",
            event_type="secrets_validation_warnings",
            warning_count=details["warning_count"]
        )
    else:
        logger.info("Secrets validation passed", event_type="secrets_validation_success")

    for issue in details["issues"]:
        if issue["severity"] == SecretSeverity.INFO.value:
            continue
        log = logger.error if issue["severity"] == SecretSeverity.CRITICAL.value else logger.warning
        log(
            f"{issue['severity'].upper()}: {issue['setting']} - {issue['message']}",
            event_type="secret_validation_issue",
            setting=issue["setting"],
            severity=issue["severity"]
        )

    return is_valid, details
