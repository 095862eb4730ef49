"""
Configuration loader for the delivery layer.
Reads settings from YAML file with environment variable substitution.

There is no module-level settings cache: load_settings() returns a Settings
instance that the caller passes to every component it builds.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class ClientConfig:
    session_name: str = "delivery-session"
    pairing_retry_limit: int = 3
    max_reconnect_attempts: int = 5
    restart_base_delay_ms: int = 5000
    restart_settle_delay_ms: int = 2000
    auth_failure_window_ms: int = 60000
    options: dict[str, Any] = field(default_factory=dict)   # passed through to transport.connect()


@dataclass
class MessagingConfig:
    max_message_length: int = 4000
    split_reserve: int = 50              # hard-split margin left for transport framing
    typing_delay_ms: int = 1000
    inter_message_delay_ms: int = 500
    max_retries: int = 3
    retry_delay_ms: int = 2000
    stale_after_ms: int = 300000         # queued items older than this are discarded


@dataclass
class MediaConfig:
    max_file_size: int = 5242880         # 5MB
    supported_formats: list[str] = field(
        default_factory=lambda: ["jpg", "jpeg", "png", "webp"]
    )


@dataclass
class SecurityConfig:
    admin_numbers: list[str] = field(default_factory=list)
    allowed_groups: list[str] = field(default_factory=list)
    default_country_code: str = "62"
    rate_limit_per_recipient: int = 10
    rate_limit_window_ms: int = 3600000  # 1 hour


@dataclass
class FeatureFlags:
    send_typing: bool = True
    rate_limiting: bool = True


@dataclass
class Settings:
    app_name: str = "DeliveryBot"
    debug: bool = False
    client: ClientConfig = field(default_factory=ClientConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    features: FeatureFlags = field(default_factory=FeatureFlags)


_PLACEHOLDER = re.compile(r'\$\{\w+\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        value = _substitute_env_vars(obj)
        # a placeholder with no matching env var counts as "not configured"
        return None if _PLACEHOLDER.fullmatch(value) else value
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_list(value: Any) -> list[str]:
    """Accept either a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def _as_int(value: Any, default: int) -> int:
    # unresolved ${VAR} placeholders fall back to the default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return default


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed mapping (YAML or test input)."""
    raw = _process_values(raw or {})
    settings = Settings()

    settings.app_name = raw.get("app_name") or settings.app_name
    settings.debug = _as_bool(raw.get("debug"), settings.debug)

    if "client" in raw:
        c = raw["client"] or {}
        d = ClientConfig()
        settings.client = ClientConfig(
            session_name=c.get("session_name") or d.session_name,
            pairing_retry_limit=_as_int(c.get("pairing_retry_limit"), d.pairing_retry_limit),
            max_reconnect_attempts=_as_int(c.get("max_reconnect_attempts"), d.max_reconnect_attempts),
            restart_base_delay_ms=_as_int(c.get("restart_base_delay_ms"), d.restart_base_delay_ms),
            restart_settle_delay_ms=_as_int(c.get("restart_settle_delay_ms"), d.restart_settle_delay_ms),
            auth_failure_window_ms=_as_int(c.get("auth_failure_window_ms"), d.auth_failure_window_ms),
            options=c.get("options", {}) or {},
        )

    if "messaging" in raw:
        m = raw["messaging"] or {}
        d = MessagingConfig()
        settings.messaging = MessagingConfig(
            max_message_length=_as_int(m.get("max_message_length"), d.max_message_length),
            split_reserve=_as_int(m.get("split_reserve"), d.split_reserve),
            typing_delay_ms=_as_int(m.get("typing_delay_ms"), d.typing_delay_ms),
            inter_message_delay_ms=_as_int(m.get("inter_message_delay_ms"), d.inter_message_delay_ms),
            max_retries=_as_int(m.get("max_retries"), d.max_retries),
            retry_delay_ms=_as_int(m.get("retry_delay_ms"), d.retry_delay_ms),
            stale_after_ms=_as_int(m.get("stale_after_ms"), d.stale_after_ms),
        )

    if "media" in raw:
        md = raw["media"] or {}
        d = MediaConfig()
        formats = _as_list(md.get("supported_formats")) or d.supported_formats
        settings.media = MediaConfig(
            max_file_size=_as_int(md.get("max_file_size"), d.max_file_size),
            supported_formats=[f.lower() for f in formats],
        )

    if "security" in raw:
        s = raw["security"] or {}
        d = SecurityConfig()
        settings.security = SecurityConfig(
            admin_numbers=_as_list(s.get("admin_numbers")),
            allowed_groups=_as_list(s.get("allowed_groups")),
            default_country_code=str(s.get("default_country_code") or d.default_country_code),
            rate_limit_per_recipient=_as_int(s.get("rate_limit_per_recipient"), d.rate_limit_per_recipient),
            rate_limit_window_ms=_as_int(s.get("rate_limit_window_ms"), d.rate_limit_window_ms),
        )

    if "features" in raw:
        f = raw["features"] or {}
        d = FeatureFlags()
        settings.features = FeatureFlags(
            send_typing=_as_bool(f.get("send_typing"), d.send_typing),
            rate_limiting=_as_bool(f.get("rate_limiting"), d.rate_limiting),
        )

    return settings


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML file. Missing file → defaults."""
    load_dotenv()

    if config_path is None:
        config_path = os.environ.get(
            "DELIVERY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    if not Path(config_path).exists():
        return Settings()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    return settings_from_dict(raw)


def validate_settings(settings: Settings) -> list[str]:
    """
    Check settings for impossible values and risky omissions.

    Raises ValueError for values the delivery layer cannot operate with.
    Returns a list of warnings for permissive-but-legal configurations.
    """
    errors = []
    m = settings.messaging
    if m.max_message_length < 1:
        errors.append("messaging.max_message_length must be >= 1")
    if m.max_retries < 0:
        errors.append("messaging.max_retries must be >= 0")
    for name in ("typing_delay_ms", "inter_message_delay_ms", "retry_delay_ms", "stale_after_ms"):
        if getattr(m, name) < 0:
            errors.append(f"messaging.{name} must be >= 0")
    if settings.security.rate_limit_per_recipient < 1:
        errors.append("security.rate_limit_per_recipient must be >= 1")
    if settings.security.rate_limit_window_ms < 1:
        errors.append("security.rate_limit_window_ms must be >= 1")
    if settings.media.max_file_size < 1:
        errors.append("media.max_file_size must be >= 1")
    if not settings.media.supported_formats:
        errors.append("media.supported_formats must not be empty")
    if settings.client.max_reconnect_attempts < 0:
        errors.append("client.max_reconnect_attempts must be >= 0")
    if settings.client.pairing_retry_limit < 0:
        errors.append("client.pairing_retry_limit must be >= 0")

    if errors:
        raise ValueError(f"Invalid settings: {'; '.join(errors)}")

    warnings = []
    if not settings.security.admin_numbers:
        warnings.append("admin_numbers not set - bot will accept messages from all users")
    if not settings.security.allowed_groups:
        warnings.append("allowed_groups not set - bot will work in all groups")
    return warnings
