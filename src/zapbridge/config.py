"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from zapbridge.errors import ConfigError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    app_db: str = Field(alias="APP_DB", default="/tmp/zapbridge.db")
    db_busy_timeout_seconds: int = Field(alias="DB_BUSY_TIMEOUT_SECONDS", default=30)
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    public_dir: str = Field(alias="PUBLIC_DIR", default="public")
    backend_url: str = Field(alias="BACKEND_URL", default="http://localhost")
    proxy_port: str = Field(alias="PROXY_PORT", default="8080")

    wuzapi_webhook_secret: str = Field(alias="WUZAPI_WEBHOOK_SECRET", default="")
    wuzapi_admin_url: str = Field(alias="WUZAPI_ADMIN_URL", default="")
    wuzapi_admin_token: str = Field(alias="WUZAPI_ADMIN_TOKEN", default="")
    gateway_timeout_seconds: int = Field(alias="GATEWAY_TIMEOUT_SECONDS", default=20)
    gateway_download_timeout_seconds: int = Field(
        alias="GATEWAY_DOWNLOAD_TIMEOUT_SECONDS", default=60
    )

    transcode_timeout_seconds: int = Field(alias="TRANSCODE_TIMEOUT_SECONDS", default=45)
    ffmpeg_binary: str = Field(alias="FFMPEG_BINARY", default="ffmpeg")
    ffprobe_binary: str = Field(alias="FFPROBE_BINARY", default="ffprobe")
    voice_note_bitrate: str = Field(alias="VOICE_NOTE_BITRATE", default="64k")
    voice_note_sample_rate: int = Field(alias="VOICE_NOTE_SAMPLE_RATE", default=48000)
    voice_note_channels: int = Field(alias="VOICE_NOTE_CHANNELS", default=1)

    web_cors_origins: str = Field(alias="WEB_CORS_ORIGINS", default="http://localhost:3000")

    # Security: bind host defaults to loopback
    bind_host: str = Field(alias="BIND_HOST", default="127.0.0.1")
    bind_port: int = Field(alias="BIND_PORT", default=8080)


def validate_settings_for_env(settings: Settings) -> None:
    import logging as _logging
    import warnings

    _logger = _logging.getLogger(__name__)

    if settings.app_env == "prod" and settings.bind_host == "0.0.0.0":
        msg = (
            "SECURITY WARNING: BIND_HOST=0.0.0.0 in production. "
            "This exposes the API to all network interfaces. "
            "Set BIND_HOST=127.0.0.1 and use a reverse proxy."
        )
        _logger.warning(msg)
        warnings.warn(msg, stacklevel=2)

    if settings.transcode_timeout_seconds <= 0:
        raise ConfigError("invalid configuration: TRANSCODE_TIMEOUT_SECONDS must be positive")

    if settings.app_env != "prod":
        return

    missing: list[str] = []
    required_non_empty = {
        "APP_DB": settings.app_db,
        "PUBLIC_DIR": settings.public_dir,
        "BACKEND_URL": settings.backend_url,
        "WUZAPI_WEBHOOK_SECRET": settings.wuzapi_webhook_secret,
    }
    for key, value in required_non_empty.items():
        if not value.strip():
            missing.append(key)

    if "localhost" in settings.backend_url or "127.0.0.1" in settings.backend_url:
        # the provider fetches outbound media from this host
        missing.append("BACKEND_URL(publicly reachable value)")
    if not settings.app_db.startswith("/"):
        missing.append("APP_DB(absolute path required)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ConfigError(f"invalid production configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
