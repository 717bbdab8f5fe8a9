"""
Configuration loader for the flowly bot.
Reads settings from YAML file with environment variable substitution, then
lets well-known environment variables override individual keys.
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
class WhatsAppConfig:
    access_token: str = ""
    verify_token: str = "brokerbot_verify"
    app_secret: str = ""                    # enables X-Hub-Signature-256 checks
    api_version: str = "v24.0"
    force_to: str = ""                      # dev only: reroute every reply here


@dataclass
class CalendarConfig:
    access_token: str = ""
    default_calendar_id: str = ""
    timezone: str = "America/Argentina/Buenos_Aires"
    summary_prefix: str = "Turno Flowly"


@dataclass
class Settings:
    app_name: str = "flowly"
    env: str = "dev"                        # dev | staging | prod
    config_root: str = "configs"
    public_base_url: str = ""
    default_tenant: str = "broker"
    tenant_by_phone_number_id: dict[str, str] = field(default_factory=dict)
    fallback_contact_name: str = "ahí"
    session_shards: int = 16
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"


_settings: Optional[Settings] = None


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
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def parse_tenant_map(raw: str) -> dict[str, str]:
    """Parse "phone_id:tenant,phone_id2:tenant2"; malformed pairs are skipped."""
    mapping = {}
    for pair in raw.split(","):
        phone_id, sep, tenant = pair.strip().partition(":")
        if sep and phone_id.strip() and tenant.strip():
            mapping[phone_id.strip()] = tenant.strip()
    return mapping


def load_env_files(env: Optional[str] = None) -> str:
    """Load .env and .env.<APP_ENV> if present. Returns the effective env."""
    env = (env or os.environ.get("APP_ENV", "")).strip() or "dev"
    load_dotenv(".env")
    load_dotenv(f".env.{env}")
    return os.environ.get("APP_ENV", "").strip() or env


def _apply_env_overrides(settings: Settings) -> None:
    env = os.environ
    if env.get("APP_ENV"):
        settings.env = env["APP_ENV"].strip()
    if env.get("FLOWLY_CONFIG_ROOT"):
        settings.config_root = env["FLOWLY_CONFIG_ROOT"]
    if env.get("PUBLIC_BASE_URL"):
        settings.public_base_url = env["PUBLIC_BASE_URL"]
    if env.get("DEFAULT_TENANT"):
        settings.default_tenant = env["DEFAULT_TENANT"]
    if env.get("TENANT_BY_PHONE_NUMBER_ID"):
        settings.tenant_by_phone_number_id.update(parse_tenant_map(env["TENANT_BY_PHONE_NUMBER_ID"]))

    if env.get("WHATSAPP_TOKEN"):
        settings.whatsapp.access_token = env["WHATSAPP_TOKEN"]
    if env.get("VERIFY_TOKEN"):
        settings.whatsapp.verify_token = env["VERIFY_TOKEN"]
    if env.get("WHATSAPP_APP_SECRET"):
        settings.whatsapp.app_secret = env["WHATSAPP_APP_SECRET"]
    if env.get("WHATSAPP_FORCE_TO"):
        settings.whatsapp.force_to = env["WHATSAPP_FORCE_TO"]

    if env.get("GOOGLE_CALENDAR_ID"):
        settings.calendar.default_calendar_id = env["GOOGLE_CALENDAR_ID"]
    if env.get("GOOGLE_CALENDAR_TOKEN"):
        settings.calendar.access_token = env["GOOGLE_CALENDAR_TOKEN"]

    # Rerouting replies is a test-number convenience, never outside dev
    if settings.env != "dev":
        settings.whatsapp.force_to = ""


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWLY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.env = raw.get("env", settings.env)
        settings.config_root = raw.get("config_root", settings.config_root)
        settings.public_base_url = raw.get("public_base_url", settings.public_base_url)
        settings.default_tenant = raw.get("default_tenant", settings.default_tenant)
        settings.fallback_contact_name = raw.get("fallback_contact_name", settings.fallback_contact_name)
        settings.session_shards = int(raw.get("session_shards", settings.session_shards))

        tenants = raw.get("tenant_by_phone_number_id", {})
        if isinstance(tenants, str):
            tenants = parse_tenant_map(tenants)
        settings.tenant_by_phone_number_id = {str(k): str(v) for k, v in tenants.items()}

        if "whatsapp" in raw:
            wa = raw["whatsapp"]
            settings.whatsapp = WhatsAppConfig(
                access_token=wa.get("access_token", ""),
                verify_token=wa.get("verify_token", settings.whatsapp.verify_token),
                app_secret=wa.get("app_secret", ""),
                api_version=wa.get("api_version", settings.whatsapp.api_version),
                force_to=wa.get("force_to", ""),
            )

        if "calendar" in raw:
            cal = raw["calendar"]
            settings.calendar = CalendarConfig(
                access_token=cal.get("access_token", ""),
                default_calendar_id=cal.get("default_calendar_id", ""),
                timezone=cal.get("timezone", settings.calendar.timezone),
                summary_prefix=cal.get("summary_prefix", settings.calendar.summary_prefix),
            )

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
