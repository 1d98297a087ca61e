import os
from typing import Dict, Any, Tuple, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from app.log.logging import logger


def parse_csv_setting(value: str) -> List[str]:
    """Parse a comma-separated setting into a list of trimmed values."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Configuration class for environment variables and service settings.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )
    service_name: str = os.getenv("SERVICE_NAME", "faceswap-credits")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = os.getenv("DEBUG", "False").lower() == "true"

    # Database settings
    database_url: str = os.getenv("DATABASE_URL", "")
    test_database_url: str = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

    # Identity provider tokens (the provider signs, we only verify)
    AUTH_JWT_SECRET: str = os.getenv("AUTH_JWT_SECRET", "")
    AUTH_JWT_ALGORITHM: str = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
    AUTH_JWT_AUDIENCE: str = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
    AUTH_JWT_LEEWAY_SECONDS: int = int(os.getenv("AUTH_JWT_LEEWAY_SECONDS", "30"))

    # Service-to-service / operator authentication
    INTERNAL_API_KEY: str = os.getenv("INTERNAL_API_KEY", "")

    # Stripe settings
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_VERSION: str = os.getenv("STRIPE_API_VERSION", "2024-06-20")
    STRIPE_TIMEOUT_SECONDS: float = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
    APP_URL: str = os.getenv("APP_URL", "http://localhost:3000")
    CHECKOUT_SUCCESS_PATH: str = os.getenv("CHECKOUT_SUCCESS_PATH", "/dashboard/billing?success=true")
    CHECKOUT_CANCEL_PATH: str = os.getenv("CHECKOUT_CANCEL_PATH", "/pricing?canceled=true")

    # Ledger settings
    INITIAL_CREDIT_GRANT: int = int(os.getenv("INITIAL_CREDIT_GRANT", "5"))
    LEDGER_LOCK_TIMEOUT_MS: int = int(os.getenv("LEDGER_LOCK_TIMEOUT_MS", "5000"))
    FACE_SWAP_CREDIT_COST: int = int(os.getenv("FACE_SWAP_CREDIT_COST", "1"))

    # Subscription plans, keyed by Stripe price unit amount
    MONTHLY_PLAN_PRICE_CENTS: int = int(os.getenv("MONTHLY_PLAN_PRICE_CENTS", "1690"))
    MONTHLY_PLAN_CREDITS: int = int(os.getenv("MONTHLY_PLAN_CREDITS", "120"))
    YEARLY_PLAN_PRICE_CENTS: int = int(os.getenv("YEARLY_PLAN_PRICE_CENTS", "11880"))
    YEARLY_PLAN_CREDITS: int = int(os.getenv("YEARLY_PLAN_CREDITS", "1800"))

    # Face swap provider (Face++ mergeface)
    FACEPP_API_KEY: str = os.getenv("FACEPP_API_KEY", "")
    FACEPP_API_SECRET: str = os.getenv("FACEPP_API_SECRET", "")
    FACEPP_MERGEFACE_URL: str = os.getenv(
        "FACEPP_MERGEFACE_URL", "https://api-cn.faceplusplus.com/imagepp/v1/mergeface"
    )
    FACE_SWAP_TIMEOUT_SECONDS: float = float(os.getenv("FACE_SWAP_TIMEOUT_SECONDS", "30"))
    FACE_SWAP_MAX_ATTEMPTS: int = int(os.getenv("FACE_SWAP_MAX_ATTEMPTS", "3"))
    FACE_SWAP_RETRY_DELAY_SECONDS: float = float(os.getenv("FACE_SWAP_RETRY_DELAY_SECONDS", "1"))
    FACE_SWAP_MERGE_RATE: int = int(os.getenv("FACE_SWAP_MERGE_RATE", "100"))
    FACE_SWAP_MAX_UPLOAD_BYTES: int = int(os.getenv("FACE_SWAP_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    FACE_SWAP_ALLOWED_TYPES: str = os.getenv("FACE_SWAP_ALLOWED_TYPES", "image/jpeg,image/jpg,image/png,image/webp")
    FACE_SWAP_STORAGE_DIR: str = os.getenv("FACE_SWAP_STORAGE_DIR", "./storage")

    # Request handling
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    FACE_SWAP_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("FACE_SWAP_REQUEST_TIMEOUT_SECONDS", "120"))

    # CORS settings
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    CORS_ALLOW_CREDENTIALS: bool = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() == "true"
    CORS_ALLOW_METHODS: str = os.getenv("CORS_ALLOW_METHODS", "GET,POST,DELETE,OPTIONS")
    CORS_ALLOW_HEADERS: str = os.getenv("CORS_ALLOW_HEADERS", "Authorization,Content-Type,X-API-Key")
    CORS_MAX_AGE: int = int(os.getenv("CORS_MAX_AGE", "600"))

    # Rate limiting settings
    RATE_LIMIT_ENABLED: bool = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
    RATE_LIMIT_DEFAULT: str = os.getenv("RATE_LIMIT_DEFAULT", "100/minute")
    RATE_LIMIT_FACE_SWAP: str = os.getenv("RATE_LIMIT_FACE_SWAP", "10/minute")
    RATE_LIMIT_STORAGE_URI: str = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")

    @property
    def cors_origins_list(self) -> List[str]:
        return parse_csv_setting(self.CORS_ORIGINS)

    @property
    def cors_methods_list(self) -> List[str]:
        return parse_csv_setting(self.CORS_ALLOW_METHODS)

    @property
    def cors_headers_list(self) -> List[str]:
        return parse_csv_setting(self.CORS_ALLOW_HEADERS)

    @property
    def face_swap_allowed_types(self) -> List[str]:
        return parse_csv_setting(self.FACE_SWAP_ALLOWED_TYPES)

settings = Settings()


def _validation_result(issues: List[str], warnings: List[str]) -> Tuple[bool, Dict[str, Any]]:
    valid = not issues
    return valid, {
        "valid": valid,
        "issues": issues,
        "warnings": warnings
    }


def validate_stripe_config() -> Tuple[bool, Dict[str, Any]]:
    """
    Validate Stripe configuration and log problems.

    Returns:
        Tuple[bool, Dict[str, Any]]:
            - Boolean indicating if configuration is valid
            - Dictionary with validation details
    """
    issues = []
    warnings = []

    if not settings.STRIPE_SECRET_KEY:
        issue = "Stripe secret key not configured (STRIPE_SECRET_KEY)"
        logger.error(issue, event_type="config_error", setting="STRIPE_SECRET_KEY")
        issues.append(issue)

    if not settings.STRIPE_WEBHOOK_SECRET:
        issue = "Stripe webhook secret not configured (STRIPE_WEBHOOK_SECRET)"
        logger.error(issue, event_type="config_error", setting="STRIPE_WEBHOOK_SECRET")
        issues.append(issue)

    if settings.STRIPE_TIMEOUT_SECONDS <= 0:
        warning = "Stripe timeout must be positive (STRIPE_TIMEOUT_SECONDS)"
        logger.warning(warning, event_type="config_warning", setting="STRIPE_TIMEOUT_SECONDS")
        warnings.append(warning)

    return _validation_result(issues, warnings)


def validate_face_swap_config() -> Tuple[bool, Dict[str, Any]]:
    """
    Validate face swap provider configuration.

    Returns:
        Tuple[bool, Dict[str, Any]]: validity flag and validation details
    """
    issues = []
    warnings = []

    if not settings.FACEPP_API_KEY or not settings.FACEPP_API_SECRET:
        issue = "Face swap API credentials not configured (FACEPP_API_KEY / FACEPP_API_SECRET)"
        logger.error(issue, event_type="config_error", setting="FACEPP_API_KEY")
        issues.append(issue)

    if settings.FACE_SWAP_MAX_ATTEMPTS < 1:
        issue = "Face swap attempts must be at least 1 (FACE_SWAP_MAX_ATTEMPTS)"
        logger.error(issue, event_type="config_error", setting="FACE_SWAP_MAX_ATTEMPTS")
        issues.append(issue)

    worst_case = settings.FACE_SWAP_MAX_ATTEMPTS * (
        settings.FACE_SWAP_TIMEOUT_SECONDS + settings.FACE_SWAP_RETRY_DELAY_SECONDS
    )
    if worst_case > settings.FACE_SWAP_REQUEST_TIMEOUT_SECONDS:
        warning = (
            "Face swap retries can outlast the request timeout "
            "(FACE_SWAP_REQUEST_TIMEOUT_SECONDS)"
        )
        logger.warning(
            warning,
            event_type="config_warning",
            setting="FACE_SWAP_REQUEST_TIMEOUT_SECONDS",
            worst_case_seconds=worst_case
        )
        warnings.append(warning)

    return _validation_result(issues, warnings)


def validate_internal_api_key() -> Tuple[bool, Dict[str, Any]]:
    """
    Validate internal service API key configuration.

    Returns:
        Tuple[bool, Dict[str, Any]]: validity flag and validation details
    """
    issues = []
    warnings = []

    if not settings.INTERNAL_API_KEY:
        issue = "Internal API key not configured (INTERNAL_API_KEY)"
        logger.error(issue, event_type="config_error", setting="INTERNAL_API_KEY")
        issues.append(issue)
    elif len(settings.INTERNAL_API_KEY) < 32:
        warning = "Internal API key may be too short for security (INTERNAL_API_KEY)"
        logger.warning(warning, event_type="config_warning", setting="INTERNAL_API_KEY")
        warnings.append(warning)

    return _validation_result(issues, warnings)
