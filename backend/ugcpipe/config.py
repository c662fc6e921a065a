"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, field_validator
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
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


MOTION_CONTROL_PROMPT = (
    "Replace the person in the input video with the person from the provided "
    "reference image, preserving the exact facial identity from the image.\n\n"
    "The final video must retain the original video's motion, timing, camera "
    "movement, lighting behavior, and background realism. The subject should move "
    "naturally and remain perfectly aligned with the original body motion, pose, "
    "and gestures from the video.\n\n"
    "Facial identity transfer only:\n"
    "Use the reference image strictly for facial structure, skin texture, "
    "proportions, and identity. Do not stylize, beautify, or alter the face. No "
    "face reshaping, no AI smoothing, no plastic skin.\n\n"
    "Maintain photorealism at all times. The result must look like a real person "
    "recorded on a smartphone, not an AI-generated video.\n\n"
    "Preserve the original clothing, background, environment, lighting, and depth "
    "from the video exactly."
)

SUBTLE_ANIMATION_PROMPT = (
    "Create a natural, lifelike video from the reference image at 30fps, adding "
    "subtle, context-appropriate motion that continues the implied action of the "
    "subject's current pose while obeying physics. Include organic breathing "
    "rhythm, micro-expressions, natural eye movements and blinks, gentle weight "
    "shifts, realistic motion blur, slight handheld camera shake, and mobile phone "
    "camera grain so the result looks like a candid smartphone clip. "
    "Audio: refreshing upbeat lo-fi beats."
)


class ProvidersConfig(BaseModel):
    """Credentials and endpoints for third-party services.

    Keys are normally supplied via .env (UGCPIPE_PROVIDERS__FAL_KEY, ...).
    """

    fal_key: str = ""
    fal_queue_url: str = "https://queue.fal.run"
    rapidapi_key: str = ""
    tiktok_host: str = "tiktok-api23.p.rapidapi.com"
    instagram_host: str = "instagram-looter2.p.rapidapi.com"
    # Public base URL of this deployment; enables provider webhooks when set
    app_url: Optional[str] = None


class ResolverConfig(BaseModel):
    """Social video lookup retry and rate-limit parameters."""

    max_attempts: int = 3
    base_delay: float = 2.0
    rate_per_second: float = 2.0
    timeout: float = 30.0


class GenerationConfig(BaseModel):
    """External generation defaults and polling budget."""

    motion_control_endpoint: str = "fal-ai/kling-video/v2.6/standard/motion-control"
    animation_endpoint: str = "fal-ai/veo3.1/image-to-video"
    poll_interval: float = 5.0
    max_polls: int = 360
    default_max_seconds: float = 10.0
    motion_prompt: str = MOTION_CONTROL_PROMPT
    animation_prompt: str = SUBTLE_ANIMATION_PROMPT
    animation_aspect_ratio: str = "9:16"
    animation_duration: str = "4s"
    animation_resolution: str = "720p"
    animation_generate_audio: bool = True


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///ugcpipe.db"
    scratch_dir: Path = Path("tmp/scratch")
    store_dir: Path = Path("tmp/store")
    # When unset, store objects are addressed with file:// URLs, which the
    # generation provider cannot fetch
    public_base_url: Optional[str] = None

    @field_validator("scratch_dir", "store_dir", mode="before")
    @classmethod
    def convert_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class RecoveryConfig(BaseModel):
    """Stuck-job sweep thresholds."""

    stuck_threshold_minutes: int = 10
    scratch_max_age_hours: float = 6.0


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: UGCPIPE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="UGCPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    providers: ProvidersConfig = ProvidersConfig()
    resolver: ResolverConfig = ResolverConfig()
    generation: GenerationConfig = GenerationConfig()
    storage: StorageConfig = StorageConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    server: ServerConfig = ServerConfig()

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
        1. Environment variables
        2. .env file
        3. YAML file
        4. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
