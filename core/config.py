import logging
import time
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
logger = logging.getLogger(__name__)

ProviderName = Literal["builtin", "cloud"]
PROVIDER_NAMES = ("builtin", "cloud")

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the application (e.g., DEBUG, INFO, WARNING, ERROR)")
    AI_SETTINGS_PATH: str = Field("data/ai_provider_settings.json", description="Where provider settings are persisted.")
    CACHE_TTL_SECONDS: float = Field(300.0, gt=0, description="Lifetime of cached operation results.")

    # --- Cloud API (Gemini) ---
    GEMINI_API_KEY: Optional[str] = Field(None, description="Credential for the cloud provider.")
    CLOUD_BASE_URL: Optional[str] = Field(None, description="Override for the generative API base URL.")
    CLOUD_MODEL: Optional[str] = Field(None, description="Override for the text model.")
    CLOUD_VISION_MODEL: Optional[str] = Field(None, description="Override for the vision model.")
    CLOUD_TIMEOUT_SECONDS: Optional[float] = Field(None, gt=0)

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def uppercase_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

# --- YAML-based Configuration Models ---

class GenerationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature: float = 0.7
    top_p: float = Field(0.95, alias="topP")
    top_k: int = Field(40, alias="topK")
    max_output_tokens: int = Field(2048, alias="maxOutputTokens")

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True)


class CloudConfig(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash-lite-preview-09-2025"
    vision_model: str = "gemini-2.0-flash"
    timeout_seconds: float = 30.0
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    vision_generation: GenerationConfig = Field(
        default_factory=lambda: GenerationConfig(temperature=0.2, max_output_tokens=8192)
    )

# --- Persisted provider settings ---

class ProviderSettings(BaseModel):
    """User-facing provider preferences, persisted with camelCase keys."""
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    preferred_provider: ProviderName = Field("builtin", alias="preferredProvider")
    auto_fallback: bool = Field(True, alias="autoFallback")
    cloud_api_key: Optional[str] = Field(None, alias="cloudAPIKey")
    last_updated: float = Field(default_factory=time.time, alias="lastUpdated")

    def merged(self, partial: dict) -> "ProviderSettings":
        """Return a validated copy with ``partial`` applied (either key spelling)."""
        data = self.model_dump(by_alias=True)
        for key, value in partial.items():
            field = type(self).model_fields.get(key)
            data[field.alias if field is not None and field.alias else key] = value
        try:
            return ProviderSettings.model_validate(data)
        except ValidationError as e:
            raise ConfigError("Invalid provider settings", details=str(e)) from e

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True)


def load_yaml(name: str) -> dict:
    """Loads ``configs/<name>.yml``; an absent file yields an empty mapping."""
    config_path = BASE_DIR / 'configs' / f'{name}.yml'
    if not config_path.exists():
        logger.warning(f"Configuration file '{name}.yml' not found in {config_path.parent}, using defaults")
        return {}
    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}


def load_config(name: str, model: type[BaseModel]) -> BaseModel:
    """Loads a YAML file and validates it with the given Pydantic model."""
    try:
        return model.model_validate(load_yaml(name))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration file '{name}.yml'", details=str(e)) from e

# --- Main Config Object ---

class Config:
    """
    A unified configuration object.
    """
    def __init__(self, app: Optional[AppSettings] = None):
        self.app = app or AppSettings()
        self.cloud: CloudConfig = self._cloud_config()

    def _cloud_config(self) -> CloudConfig:
        cloud = load_config('cloud', CloudConfig)
        overrides = {
            "base_url": self.app.CLOUD_BASE_URL,
            "model": self.app.CLOUD_MODEL,
            "vision_model": self.app.CLOUD_VISION_MODEL,
            "timeout_seconds": self.app.CLOUD_TIMEOUT_SECONDS,
        }
        return cloud.model_copy(update={k: v for k, v in overrides.items() if v is not None})

# --- Global Config Instance ---
_settings_instance = None

def get_settings() -> Config:
    """
    Returns a lazily created Config instance.
    Nothing is loaded at import time, so tests can build their own Config.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Config()
    return _settings_instance


def reset_settings() -> None:
    global _settings_instance
    _settings_instance = None
