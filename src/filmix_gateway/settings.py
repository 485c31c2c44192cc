from pydantic_settings import BaseSettings
from typing import List, Optional
import logging

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/145.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Filmix Gateway settings.

    All settings can be overridden via environment variables or .env file.
    Environment variables use uppercase names (e.g., PLAYBACK_TOKEN_TTL_SEC=120).

    Fixed episode sources are checked in this order:
        FIXED_LOCAL_FILE_PATH -> FIXED_PUBLIC_MEDIA_URL -> FIXED_ENGLISH_SOURCE
    When none is set, the fixed episode is resolved like any other episode.
    """
    environment: str = "development"
    app_version: str = "dev"
    expose_health_version: Optional[bool] = None

    # Upstream
    page_url: str = "https://filmix.zip/multser/detskij/87660-v-schenyachiy-patrul-chas-2013.html"
    user_agent: str = DEFAULT_USER_AGENT
    filmix_login: str = ""
    filmix_password: str = ""
    filmix_cookie: str = ""
    show_title: str = "PAW Patrol"
    preferred_translation_pattern: str = "ukr|укра"
    request_timeout: float = 30.0

    # Decoder key table (separator + keys in registration order)
    decode_separator: str = ":<:"
    decode_keys: str = "2owKDUoGzsuLNEyhNx,19n1iKBr89ubskS5zT,IDaBt08C9Wf7lYr0eH,lNjI9V5U1gMnsxt4Qr,o9wPt0ii42GWeS7L7A"

    # Fixed episode
    fixed_season: int = 5
    fixed_episode: int = 11
    fixed_english_source: str = ""
    fixed_local_file_path: str = ""
    fixed_public_media_url: str = ""
    fixed_quality: str = "max"

    # Cache tiers (seconds)
    source_cache_ttl: float = 1800.0
    playlist_cache_ttl: float = 600.0
    player_data_cache_ttl: float = 60.0
    catalog_snapshot_ttl: float = 60.0

    # Playback tokens
    playback_token_secret: str = ""
    playback_token_ttl_sec: int = 60
    playback_token_max_uses: int = 256

    # HTTP surface
    rate_limit_window_sec: float = 60.0
    rate_limit_max_requests: int = 60
    cors_origin: str = ""
    allow_localhost_origins: Optional[bool] = None
    admin_token: str = ""

    # Local state
    english_map_path: str = "data/english-map.json"
    playback_progress_path: str = "/tmp/filmix-playback-progress.json"

    # Transcode pipeline
    transcode_cache_dir: str = "/tmp/filmix-cache"
    transcode_language: str = "en"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    transcode_timeout: float = 900.0

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    testing: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def decode_key_list(self) -> List[str]:
        return [key.strip() for key in self.decode_keys.split(",") if key.strip()]

    @property
    def cors_origins(self) -> List[str]:
        return [item.strip() for item in self.cors_origin.split(",") if item.strip()]

    @property
    def localhost_origins_allowed(self) -> bool:
        if self.allow_localhost_origins is None:
            return not self.is_production
        return self.allow_localhost_origins

    @property
    def health_version_exposed(self) -> bool:
        if self.expose_health_version is None:
            return not self.is_production
        return self.expose_health_version

    @property
    def effective_token_secret(self) -> str:
        """Signing secret for playback tokens; a development secret outside production."""
        secret = self.playback_token_secret.strip()
        if secret:
            return secret
        if self.is_production:
            raise RuntimeError("PLAYBACK_TOKEN_SECRET is required")
        logging.getLogger("filmix-gateway").warning(
            "PLAYBACK_TOKEN_SECRET not configured; using development secret"
        )
        return "dev-playback-token-secret"


settings = Settings()
