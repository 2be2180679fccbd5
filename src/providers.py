from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Mapping

from errors import ConfigurationError
from records import (
    PROVIDER_AZURE_FOUNDRY,
    PROVIDER_GEMINI,
    PROVIDER_NAMES,
    PROVIDER_OPENAI,
)


logger = logging.getLogger(__name__)


REASONING_EFFORT_PRESETS: dict[str, str] = {"off": "none", "on": "medium"}
GEMINI_THINKING_BUDGETS: dict[str, int] = {"off": 0, "on": 1024}

DEFAULT_OPENAI_MODEL = "gpt-5.2"
DEFAULT_GEMINI_MODEL = "gemini-3-flash"
DEFAULT_AZURE_FOUNDRY_MODEL = "gpt-5.2"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_AZURE_FOUNDRY_API_VERSION = "2024-10-21"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000


def _coerce_optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


@dataclass(slots=True, frozen=True)
class ProviderSettings:
    name: str
    model: str
    api_key: str | None = None
    api_key_env: str | None = None
    base_url: str | None = None
    base_url_env: str | None = None
    deployment: str | None = None
    deployment_env: str | None = None
    api_version: str | None = None

    @property
    def label(self) -> str:
        return f"{self.name.upper()} · {self.model}"

    def missing_settings(self) -> list[str]:
        """Environment variable names whose values this provider still needs."""
        missing: list[str] = []
        if self.base_url_env and not self.base_url:
            missing.append(self.base_url_env)
        if self.api_key_env and not self.api_key:
            missing.append(self.api_key_env)
        if self.deployment_env and not self.deployment:
            missing.append(self.deployment_env)
        return missing

    @property
    def is_configured(self) -> bool:
        return not self.missing_settings()

    def require_configured(self) -> None:
        missing = self.missing_settings()
        if missing:
            raise ConfigurationError(f"{missing[0]} is not configured.")


@dataclass(slots=True, frozen=True)
class GatewayConfig:
    providers: tuple[ProviderSettings, ...]
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    static_dir: Path | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "GatewayConfig":
        def get(key: str, default: str | None = None) -> str | None:
            return _coerce_optional_string(environ.get(key)) or default

        available = {
            PROVIDER_OPENAI: ProviderSettings(
                name=PROVIDER_OPENAI,
                model=get("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
                api_key=get("OPENAI_API_KEY"),
                api_key_env="OPENAI_API_KEY",
                base_url=get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL),
            ),
            PROVIDER_GEMINI: ProviderSettings(
                name=PROVIDER_GEMINI,
                model=get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
                api_key=get("GEMINI_API_KEY"),
                api_key_env="GEMINI_API_KEY",
                base_url=get("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL),
            ),
            PROVIDER_AZURE_FOUNDRY: ProviderSettings(
                name=PROVIDER_AZURE_FOUNDRY,
                model=get("AZURE_FOUNDRY_MODEL", DEFAULT_AZURE_FOUNDRY_MODEL),
                api_key=get("AZURE_FOUNDRY_API_KEY"),
                api_key_env="AZURE_FOUNDRY_API_KEY",
                base_url=get("AZURE_FOUNDRY_ENDPOINT"),
                base_url_env="AZURE_FOUNDRY_ENDPOINT",
                deployment=get("AZURE_FOUNDRY_DEPLOYMENT"),
                deployment_env="AZURE_FOUNDRY_DEPLOYMENT",
                api_version=get(
                    "AZURE_FOUNDRY_API_VERSION", DEFAULT_AZURE_FOUNDRY_API_VERSION
                ),
            ),
        }

        selected_raw = get("LLM_GATEWAY_PROVIDERS")
        if selected_raw is None:
            selected_names = list(PROVIDER_NAMES)
        else:
            selected_names = [
                name.strip() for name in selected_raw.split(",") if name.strip()
            ]
        unknown = [name for name in selected_names if name not in available]
        if unknown:
            raise ConfigurationError(
                "Unknown provider(s) in LLM_GATEWAY_PROVIDERS: " + ", ".join(unknown)
            )
        if not selected_names:
            raise ConfigurationError("LLM_GATEWAY_PROVIDERS selects no providers.")

        port_raw = get("PORT")
        try:
            port = int(port_raw) if port_raw is not None else DEFAULT_PORT
        except ValueError as exc:
            raise ConfigurationError(f"PORT must be an integer, got {port_raw!r}") from exc

        static_dir_raw = get("LLM_GATEWAY_STATIC_DIR")
        config = cls(
            providers=tuple(dict.fromkeys(available[name] for name in selected_names)),
            host=get("HOST", DEFAULT_HOST),
            port=port,
            static_dir=Path(static_dir_raw) if static_dir_raw else None,
        )
        logger.debug(
            "Loaded gateway config: providers=%s configured=%s",
            [provider.name for provider in config.providers],
            [provider.name for provider in config.providers if provider.is_configured],
        )
        return config

    def list_models(self) -> list[dict[str, object]]:
        return [
            {
                "id": provider.name,
                "label": provider.label,
                "configured": provider.is_configured,
            }
            for provider in self.providers
        ]
