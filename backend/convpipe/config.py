"""Configuration management with YAML and environment variable support."""

import sys
from pathlib import Path
from typing import ClassVar, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:5175",
    "http://localhost:5176",
    "http://localhost:5177",
    "http://localhost:5178",
    "http://localhost:5179",
    "http://localhost:3000",
]


class ServerConfig(BaseModel):
    """HTTP server configuration for the worker process."""

    host: str = "127.0.0.1"
    port: int = 3001
    cors_origins: list[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))


class StorageConfig(BaseModel):
    """Filesystem roots for the three artifact namespaces plus sample inputs."""

    uploads_dir: Path = Path("uploads")
    outputs_dir: Path = Path("Outputs")
    library_dir: Path = Path("assets/impulse-responses")
    audio_dir: Path = Path("assets/audio")

    @field_validator("uploads_dir", "outputs_dir", "library_dir", "audio_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ToolsConfig(BaseModel):
    """External tool invocation parameters.

    Commands are argument-vector prefixes so a tool can be wrapped by an
    interpreter (e.g. ``["python", "engine.py"]``).
    """

    engine_command: list[str] = Field(default_factory=lambda: ["./cli_processor"])
    transcoder_command: list[str] = Field(default_factory=lambda: ["ffmpeg"])
    engine_timeout: float = 600.0
    transcode_timeout: float = 120.0
    max_concurrent_jobs: int = Field(default=2, ge=1)


class SupervisorConfig(BaseModel):
    """Shell supervisor lifecycle parameters."""

    worker_command: list[str] = Field(
        default_factory=lambda: [sys.executable, "-m", "convpipe.api"]
    )
    graceful_timeout: float = 5.0
    kill_grace: float = 2.0
    readiness: Literal["health", "marker", "delay"] = "health"
    ready_marker: str = "Application startup complete"
    startup_delay: float = 2.0
    readiness_timeout: float = 30.0
    health_interval: float = 0.25


class LoggingConfig(BaseModel):
    """Root logger configuration applied by the CLI."""

    level: str = "INFO"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Explicit keyword arguments
    2. Environment variables (prefix: CONVPIPE_, delimiter: __) and .env
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="CONVPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit keyword arguments, used by tests)
        2. Environment variables
        3. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    @property
    def health_url(self) -> str:
        """Liveness URL of the worker this configuration describes."""
        host = "127.0.0.1" if self.server.host in ("0.0.0.0", "::") else self.server.host
        return f"http://{host}:{self.server.port}/health"


# Singleton instance
settings = Settings()
