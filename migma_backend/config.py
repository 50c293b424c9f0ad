# migma_backend/config.py
# ============================================================================
# CONFIGURATION
# ============================================================================
# Read once from the environment at start-up and passed to every component by
# constructor. Provider sections raise ConfigurationError when a required
# variable is missing; nothing silently defaults a credential or a bank field.
# ============================================================================

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

from migma_backend.errors import ConfigurationError
from migma_backend.logging_setup import resolve_level

Env = Mapping[str, str]


def _get(env: Env, name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _require(env: Env, *names: str) -> str:
    """First non-empty variable among `names`, else ConfigurationError."""
    for name in names:
        value = _get(env, name)
        if value is not None:
            return value
    raise ConfigurationError(f"{' or '.join(names)} must be configured")


# =============================================================================
# PARCELOW (Gateway A)
# =============================================================================

PARCELOW_BASE_URLS = {
    "staging": "https://sandbox-2.parcelow.com.br",
    "production": "https://app.parcelow.com",
}


@dataclass(frozen=True)
class ParcelowConfig:
    client_id: Union[int, str]
    client_secret: str
    environment: str = "staging"

    @property
    def base_url(self) -> str:
        return PARCELOW_BASE_URLS[self.environment]

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "ParcelowConfig":
        environment = (_get(env, "PARCELOW_ENVIRONMENT", "staging") or "staging").lower()
        if environment not in PARCELOW_BASE_URLS:
            raise ConfigurationError(
                f"PARCELOW_ENVIRONMENT must be one of {sorted(PARCELOW_BASE_URLS)}, got {environment!r}"
            )
        suffix = environment.upper()
        client_id = _require(env, f"PARCELOW_CLIENT_ID_{suffix}", "PARCELOW_CLIENT_ID")
        client_secret = _require(env, f"PARCELOW_CLIENT_SECRET_{suffix}", "PARCELOW_CLIENT_SECRET")
        # Numeric ids are sent as JSON numbers
        parsed_id: Union[int, str] = int(client_id) if client_id.isdigit() else client_id
        return cls(client_id=parsed_id, client_secret=client_secret, environment=environment)


# =============================================================================
# WISE (Gateway B)
# =============================================================================

WISE_BASE_URLS = {
    "sandbox": "https://api.wise-sandbox.com",
    "production": "https://api.wise.com",
}


@dataclass(frozen=True)
class WiseConfig:
    environment: str = "sandbox"
    personal_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    profile_id: Optional[str] = None
    recipient_id: Optional[str] = None

    @property
    def base_url(self) -> str:
        return WISE_BASE_URLS[self.environment]

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "WiseConfig":
        environment = (_get(env, "WISE_ENVIRONMENT", "sandbox") or "sandbox").lower()
        if environment not in WISE_BASE_URLS:
            raise ConfigurationError(
                f"WISE_ENVIRONMENT must be one of {sorted(WISE_BASE_URLS)}, got {environment!r}"
            )
        personal_token = _get(env, "WISE_PERSONAL_TOKEN")
        client_id = _get(env, "WISE_CLIENT_ID")
        client_secret = _get(env, "WISE_CLIENT_SECRET")
        if not personal_token and not (client_id and client_secret):
            raise ConfigurationError(
                "WISE_PERSONAL_TOKEN (or WISE_CLIENT_ID and WISE_CLIENT_SECRET) must be configured"
            )
        return cls(
            environment=environment,
            personal_token=personal_token,
            client_id=client_id,
            client_secret=client_secret,
            profile_id=_get(env, "WISE_PROFILE_ID"),
            recipient_id=_get(env, "WISE_RECIPIENT_ID"),
        )


ACCOUNT_TYPES = ("aba", "swift", "iban", "sort_code")

# account type -> required (attribute, env var) pairs
REQUIRED_BANK_FIELDS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "aba": (("routing_number", "WISE_MIGMA_ABA"), ("account_number", "WISE_MIGMA_ACCOUNT_NUMBER")),
    "swift": (("swift", "WISE_MIGMA_SWIFT"), ("account_number", "WISE_MIGMA_ACCOUNT_NUMBER")),
    "iban": (("iban", "WISE_MIGMA_IBAN"),),
    "sort_code": (("sort_code", "WISE_MIGMA_SORT_CODE"), ("account_number", "WISE_MIGMA_ACCOUNT_NUMBER")),
}


@dataclass(frozen=True)
class BankAccountConfig:
    """The platform's own receiving account, registered at Wise as a recipient."""

    account_holder_name: str
    currency: str = "USD"
    type: str = "aba"
    legal_type: str = "BUSINESS"
    routing_number: Optional[str] = None
    account_number: Optional[str] = None
    swift: Optional[str] = None
    iban: Optional[str] = None
    sort_code: Optional[str] = None
    bank_name: Optional[str] = None
    bank_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    post_code: Optional[str] = None
    country: Optional[str] = None

    def missing_fields(self) -> List[str]:
        if self.type not in REQUIRED_BANK_FIELDS:
            return []
        return [env_name for attr, env_name in REQUIRED_BANK_FIELDS[self.type] if not getattr(self, attr)]

    def validate(self) -> "BankAccountConfig":
        if self.type not in REQUIRED_BANK_FIELDS:
            raise ConfigurationError(
                f"WISE_MIGMA_ACCOUNT_TYPE must be one of {list(ACCOUNT_TYPES)}, got {self.type!r}"
            )
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"{' and '.join(missing)} must be configured for {self.type.upper()} account type"
            )
        return self

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "BankAccountConfig":
        account = cls(
            account_holder_name=_get(env, "WISE_MIGMA_ACCOUNT_HOLDER_NAME", "Migma Inc"),
            currency=_get(env, "WISE_MIGMA_CURRENCY", "USD"),
            type=(_get(env, "WISE_MIGMA_ACCOUNT_TYPE", "aba") or "aba").lower(),
            legal_type=_get(env, "WISE_MIGMA_LEGAL_TYPE", "BUSINESS"),
            routing_number=_get(env, "WISE_MIGMA_ABA"),
            account_number=_get(env, "WISE_MIGMA_ACCOUNT_NUMBER"),
            swift=_get(env, "WISE_MIGMA_SWIFT"),
            iban=_get(env, "WISE_MIGMA_IBAN"),
            sort_code=_get(env, "WISE_MIGMA_SORT_CODE"),
            bank_name=_get(env, "WISE_MIGMA_BANK_NAME"),
            bank_address=_get(env, "WISE_MIGMA_BANK_ADDRESS"),
            city=_get(env, "WISE_MIGMA_CITY"),
            state=_get(env, "WISE_MIGMA_STATE"),
            post_code=_get(env, "WISE_MIGMA_POST_CODE"),
            country=_get(env, "WISE_MIGMA_COUNTRY"),
        )
        return account.validate()


# =============================================================================
# WEBHOOKS, NOTIFICATIONS, FUNCTIONS
# =============================================================================

@dataclass(frozen=True)
class WebhookConfig:
    parcelow_secret: Optional[str] = None
    wise_secret: Optional[str] = None

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "WebhookConfig":
        return cls(
            parcelow_secret=_get(env, "PARCELOW_WEBHOOK_SECRET"),
            wise_secret=_get(env, "WISE_WEBHOOK_SECRET"),
        )


@dataclass(frozen=True)
class NotificationConfig:
    """Outbound automation (n8n) webhook delivery."""

    webhook_url: Optional[str] = None
    timeout_seconds: float = 30.0
    max_retries: int = 3
    max_logged_body_bytes: int = 10 * 1024

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "NotificationConfig":
        return cls(
            webhook_url=_get(env, "CLIENT_WEBHOOK_URL"),
            timeout_seconds=float(_get(env, "CLIENT_WEBHOOK_TIMEOUT", "30") or 30),
            max_retries=int(_get(env, "CLIENT_WEBHOOK_MAX_RETRIES", "3") or 3),
        )


@dataclass(frozen=True)
class FunctionsConfig:
    """Where the PDF / email functions live."""

    base_url: str
    service_key: str

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "FunctionsConfig":
        url = _require(env, "SUPABASE_URL").rstrip("/")
        return cls(
            base_url=f"{url}/functions/v1",
            service_key=_require(env, "SUPABASE_SERVICE_ROLE_KEY"),
        )


# =============================================================================
# APPLICATION
# =============================================================================

@dataclass(frozen=True)
class AppConfig:
    site_url: str
    database_url: Optional[str] = None
    consultation_product_slug: str = "consultation-common"
    log_level: str = "INFO"
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    functions: Optional[FunctionsConfig] = None
    parcelow_notify_url: Optional[str] = None

    @classmethod
    def from_env(cls, env: Env = os.environ) -> "AppConfig":
        functions = None
        if _get(env, "SUPABASE_URL"):
            functions = FunctionsConfig.from_env(env)
        log_level = _get(env, "LOG_LEVEL", "INFO").upper()
        resolve_level(log_level)
        notify_url = _get(env, "PARCELOW_NOTIFY_URL")
        if notify_url is None and functions is not None:
            notify_url = f"{functions.base_url}/parcelow-webhook"
        return cls(
            site_url=_require(env, "SITE_URL").rstrip("/"),
            parcelow_notify_url=notify_url,
            database_url=_get(env, "DATABASE_URL"),
            consultation_product_slug=_get(env, "CONSULTATION_PRODUCT_SLUG", "consultation-common"),
            log_level=log_level,
            webhooks=WebhookConfig.from_env(env),
            notifications=NotificationConfig.from_env(env),
            functions=functions,
        )
