# pushcast/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

# Pusher rejects messages above 10 KB
PUSHER_MAX_MESSAGE_BYTES = 10240


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Pusher credentials
    pusher_app_id: str | None = None
    pusher_key: str | None = None
    pusher_secret: str | None = None
    pusher_cluster: str = "mt1"
    pusher_host: str | None = None  # e.g., "soketi.internal" for a self-hosted Pusher-compatible server
    pusher_port: int | None = None
    pusher_use_tls: bool = True
    pusher_timeout_seconds: float = 10.0

    # Payload chunking (Pusher hard limit is 10 KB per message)
    pusher_chunking_enabled: bool = True
    pusher_chunking_limit: int = 9216  # bytes

    # Dispatch pipeline
    pusher_debug: bool = False  # Log every successful dispatch
    pusher_socket_id_header: str = "x-pusher-sid"  # Default header carrying the sender's socket id
    pusher_strict_policies: bool = False  # Refuse to start when handler policies are incomplete

    # Feature Flags
    enable_request_logging: bool = True
    enable_metrics: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def pusher_configured(self) -> bool:
        """Check if Pusher credentials are present"""
        return bool(
            self.pusher_app_id
            and self.pusher_key
            and self.pusher_secret
        )

    @property
    def pusher_base_url(self) -> str:
        scheme = "https" if self.pusher_use_tls else "http"
        host = self.pusher_host or f"api-{self.pusher_cluster}.pusher.com"
        if self.pusher_port:
            return f"{scheme}://{host}:{self.pusher_port}"
        return f"{scheme}://{host}"

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("pusher_app_id", self.pusher_app_id),
            ("pusher_key", self.pusher_key),
            ("pusher_secret", self.pusher_secret),
        ]

        return [field_name for field_name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Credentials ---
    if not s.pusher_configured:
        warnings.append("Pusher credentials are incomplete (events will fail to dispatch).")

    if s.pusher_host and s.pusher_cluster != "mt1":
        warnings.append("pusher_host is set: pusher_cluster is ignored.")

    # --- Transport security ---
    if s.is_production and not s.pusher_use_tls:
        warnings.append("prod: pusher_use_tls=False (request signatures travel in cleartext).")

    # --- Chunking ---
    if not s.pusher_chunking_enabled:
        warnings.append(
            "pusher_chunking_enabled=False: payloads above 10 KB will be rejected by Pusher."
        )
    elif s.pusher_chunking_limit > PUSHER_MAX_MESSAGE_BYTES:
        warnings.append(
            f"pusher_chunking_limit={s.pusher_chunking_limit} exceeds Pusher's "
            f"{PUSHER_MAX_MESSAGE_BYTES} byte message limit."
        )
    elif s.pusher_chunking_limit <= 0:
        warnings.append("pusher_chunking_limit must be positive; chunking will fail.")

    # --- Diagnostics ---
    if s.is_production and s.pusher_debug:
        warnings.append("prod: pusher_debug=True (one log line per dispatched event).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    # Logging is not configured yet at import time
    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
