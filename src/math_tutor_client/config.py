"""Application configuration using pydantic-settings."""

import functools
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

# (yaml section, yaml key) -> Settings field
_YAML_FIELDS: dict[tuple[str, str], str] = {
    ("server", "host"): "host",
    ("server", "port"): "port",
    ("gateway", "url"): "gateway_url",
    ("gateway", "timeout_seconds"): "request_timeout_seconds",
    ("storage", "path"): "store_path",
    ("storage", "seed_demo_data"): "seed_demo_data",
    ("scoring", "guided_points"): "guided_points",
    ("scoring", "soft_points"): "soft_points",
    ("voice", "max_listen_seconds"): "max_listen_seconds",
    ("voice", "silence_timeout_seconds"): "silence_timeout_seconds",
    ("voice", "submit_delay_seconds"): "voice_submit_delay_seconds",
    ("decoder", "max_continuation_lines"): "max_continuation_lines",
}


def _find_project_root() -> Path:
    """Find project root by locating pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parent.parent.parent


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads from config/settings.yaml."""

    def get_field_value(self, field_name: str) -> tuple[Any, str, bool]:
        """Not used - we implement __call__ instead."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load settings from YAML file."""
        yaml_path = _find_project_root() / "config" / "settings.yaml"
        if not yaml_path.exists():
            return {}

        with open(yaml_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        # Flatten nested sections to match Settings field names
        flattened = {}
        for (section, key), field_name in _YAML_FIELDS.items():
            value = (data.get(section) or {}).get(key)
            if value is not None:
                flattened[field_name] = value
        return flattened


class Settings(BaseSettings):
    """Application settings loaded from environment and config files."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Gateway
    gateway_url: str = Field(default="http://localhost:54321/functions/v1/math-tutor")
    gateway_api_key: str = Field(description="Bearer token for the tutoring gateway")
    request_timeout_seconds: float = Field(default=60.0)

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Storage
    store_path: Path | None = Field(default=None)
    seed_demo_data: bool = Field(default=True)

    # Scoring
    guided_points: int = Field(default=100)
    soft_points: int = Field(default=50)

    # Voice
    max_listen_seconds: float = Field(default=30.0)
    silence_timeout_seconds: float = Field(default=3.0)
    voice_submit_delay_seconds: float = Field(default=1.0)

    # Decoder
    max_continuation_lines: int = Field(default=4)

    # Paths
    project_root: Path = Field(default_factory=_find_project_root)

    @property
    def data_dir(self) -> Path:
        d = self.project_root / "data"
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def resolved_store_path(self) -> Path:
        """Location of the JSON key-value store."""
        if self.store_path is not None:
            return self.store_path
        return self.data_dir / "store.json"

    @property
    def frontend_dir(self) -> Path:
        return self.project_root / "frontend"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings sources to include YAML file.

        Priority order (highest to lowest):
        1. init_settings (arguments passed to Settings())
        2. env_settings (environment variables)
        3. dotenv_settings (.env file)
        4. YamlSettingsSource (settings.yaml)
        5. file_secret_settings
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlSettingsSource(settings_cls),
            file_secret_settings,
        )


@functools.lru_cache
def get_settings() -> Settings:
    """Get application settings singleton."""
    return Settings()
