import os
from typing import Optional, Tuple, Type
from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

class Settings(BaseSettings):
    # Spotify
    SPOTIFY_CLIENT_ID: str = ""
    SPOTIFY_CLIENT_SECRET: str = ""
    SPOTIFY_REDIRECT_URI: str = "http://localhost:8080/auth/spotify/callback"
    SPOTIFY_API_BASE_URL: str = "https://api.spotify.com/v1"
    SPOTIFY_ACCOUNTS_URL: str = "https://accounts.spotify.com"

    # Target playlist
    PLAYLIST_NAME: str = "Repeats"
    PLAYLIST_DESCRIPTION: str = "Playlist for tracks on repeat"

    # Tracker (camelCase names are the config.yaml keys)
    POLL_INTERVAL_HOURS: float = Field(1.0, validation_alias=AliasChoices("POLL_INTERVAL_HOURS", "pollInterval"))
    VALID_LISTEN_TIMES: int = Field(3, validation_alias=AliasChoices("VALID_LISTEN_TIMES", "validListenTimes"))
    FMAP_LIMIT: int = Field(5, validation_alias=AliasChoices("FMAP_LIMIT", "fmapLimit"))
    DECAY_THRESHOLD: int = Field(10, validation_alias=AliasChoices("DECAY_THRESHOLD", "decayThreshold"))

    # Remote API paging
    PAGE_SIZE: int = 50  # Spotify's max for playlist items
    RECENTLY_PLAYED_LIMIT: int = 50
    MAX_PAGES: int = 200  # Circuit breaker for playlist scans

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    HTTP_SERVER_HOST: str = "0.0.0.0"
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30
    AUTH_TIMEOUT_SECONDS: int = 0  # 0 = wait forever for the login callback

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        populate_by_name=True,
        extra="ignore"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        yaml_settings = YamlConfigSettingsSource(
            settings_cls,
            yaml_file=os.environ.get("REPEATS_CONFIG_FILE", "config.yaml"),
        )
        return init_settings, env_settings, dotenv_settings, yaml_settings, file_secret_settings

    @model_validator(mode="after")
    def check_tracker_limits(self):
        if self.VALID_LISTEN_TIMES < 1:
            raise ValueError("VALID_LISTEN_TIMES must be at least 1")
        if self.FMAP_LIMIT < self.VALID_LISTEN_TIMES:
            raise ValueError(
                f"FMAP_LIMIT ({self.FMAP_LIMIT}) must be >= VALID_LISTEN_TIMES ({self.VALID_LISTEN_TIMES})"
            )
        if self.DECAY_THRESHOLD < 0:
            raise ValueError("DECAY_THRESHOLD must not be negative")
        if self.POLL_INTERVAL_HOURS <= 0:
            raise ValueError("POLL_INTERVAL_HOURS must be positive")
        if not 1 <= self.PAGE_SIZE <= 50:
            raise ValueError("PAGE_SIZE must be between 1 and 50")
        return self

    @property
    def poll_interval_seconds(self) -> float:
        return self.POLL_INTERVAL_HOURS * 3600

settings = Settings()
