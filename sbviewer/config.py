"""App configuration loading helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import tomllib

from pydantic import BaseModel, Field

CONFIG_FILE = Path.home() / ".config" / "sbviewer" / "config.toml"

EMULATOR_CONNECTION_STRING = (
    "Endpoint=sb://localhost;SharedAccessKeyName=RootManageSharedAccessKey;"
    "SharedAccessKey=SAS_KEY_VALUE;UseDevelopmentEmulator=true;"
)
DEMO_CONNECTION_STRING = "Endpoint=sb://demo.servicebus.local/;SharedAccessKeyName=Demo;SharedAccessKey=demo"

BackendName = Literal["azure", "demo"]


class ConnectionProfileConfig(BaseModel):
    """Connection profile configuration stored in config.toml."""

    name: str
    backend: BackendName = "azure"
    connection_string: str
    admin_connection_string: str | None = None
    entity_name: str | None = None
    subscription_name: str | None = None


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    theme: str = "dark"
    peek_page_size: int = Field(default=50, ge=1, le=1000)
    receive_wait_seconds: float = Field(default=5.0, gt=0)
    operation_timeout: float = Field(default=30.0, gt=0)
    profiles: list[ConnectionProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))
    active_profile: str | None = None

    def profile(self, name: str) -> ConnectionProfileConfig:
        """Return the named profile."""

        for profile in self.profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")

    def with_active_profile(self, name: str) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()

    defaults = AppConfig.model_fields
    profiles_data = data.get("profiles")
    profiles: list[ConnectionProfileConfig] | None = None
    if isinstance(profiles_data, list):
        profiles = [
            ConnectionProfileConfig(**profile)
            for profile in profiles_data  # type: ignore[list-item]
            if isinstance(profile, dict)
        ]

    return AppConfig(
        theme=data.get("theme", defaults["theme"].default),
        peek_page_size=data.get("peek_page_size", defaults["peek_page_size"].default),
        receive_wait_seconds=data.get("receive_wait_seconds", defaults["receive_wait_seconds"].default),
        operation_timeout=data.get("operation_timeout", defaults["operation_timeout"].default),
        profiles=profiles if profiles is not None else list(_default_profiles()),
        active_profile=data.get("active_profile"),
    )


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"theme = {_quote(config.theme)}",
        f"peek_page_size = {config.peek_page_size}",
        f"receive_wait_seconds = {config.receive_wait_seconds}",
        f"operation_timeout = {config.operation_timeout}",
    ]
    if config.active_profile:
        lines.append(f"active_profile = {_quote(config.active_profile)}")
    if config.profiles:
        lines.append("")
        for profile in config.profiles:
            lines.append("[[profiles]]")
            lines.append(f"name = {_quote(profile.name)}")
            lines.append(f"backend = {_quote(profile.backend)}")
            lines.append(f"connection_string = {_quote(profile.connection_string)}")
            if profile.admin_connection_string:
                lines.append(f"admin_connection_string = {_quote(profile.admin_connection_string)}")
            if profile.entity_name:
                lines.append(f"entity_name = {_quote(profile.entity_name)}")
            if profile.subscription_name:
                lines.append(f"subscription_name = {_quote(profile.subscription_name)}")
            lines.append("")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    theme = raw.get("theme")
    if isinstance(theme, str):
        data["theme"] = theme
    page_size = raw.get("peek_page_size")
    if isinstance(page_size, int) and not isinstance(page_size, bool) and page_size > 0:
        data["peek_page_size"] = page_size
    for key in ("receive_wait_seconds", "operation_timeout"):
        value = raw.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            data[key] = float(value)
    active_profile = raw.get("active_profile")
    if isinstance(active_profile, str):
        data["active_profile"] = active_profile
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed_profiles: list[dict[str, object]] = []
        for profile in profiles:
            if not isinstance(profile, dict):
                continue
            parsed: dict[str, object] = {}
            for key in (
                "name",
                "connection_string",
                "admin_connection_string",
                "entity_name",
                "subscription_name",
            ):
                value = profile.get(key)
                if isinstance(value, str):
                    parsed[key] = value
            backend = profile.get("backend")
            if backend in ("azure", "demo"):
                parsed["backend"] = backend
            if parsed.get("name") and parsed.get("connection_string"):
                parsed_profiles.append(parsed)
        if parsed_profiles:
            data["profiles"] = parsed_profiles
    return data


def _default_profiles() -> tuple[ConnectionProfileConfig, ...]:
    """Default profiles shown on first run before config is customized."""

    return (
        ConnectionProfileConfig(
            name="Local Emulator",
            backend="azure",
            connection_string=os.environ.get("CONNECTION_STRING") or EMULATOR_CONNECTION_STRING,
            admin_connection_string=os.environ.get("ROOT_CONNECTION_STRING") or None,
            entity_name=os.environ.get("ENTITY_NAME") or "queue.1",
            subscription_name=os.environ.get("SUBSCRIPTION_NAME") or None,
        ),
        ConnectionProfileConfig(
            name="Demo Namespace",
            backend="demo",
            connection_string=DEMO_CONNECTION_STRING,
            admin_connection_string=DEMO_CONNECTION_STRING,
        ),
    )
