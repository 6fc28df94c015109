from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHIPYARD_",
        env_file=".env",
        extra="ignore",
    )

    ROOT_DIR: str = "."
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None

    RUNTIME: str = "podman"
    PROXY_IMAGE: str = "docker.io/library/caddy:latest"
    REMOTE_APP_ROOT: str = "/var/app"
    DEFAULT_REGISTRY: str = "ghcr.io"

    SETTLE_SECONDS: float = 2
    PROXY_SETTLE_SECONDS: float = 3
    DIRECT_SETTLE_SECONDS: float = 3
    HEALTH_POLL_INTERVAL: float = 1

    SSH_CONFIG: str = "~/.ssh/config"
    SSH_CONNECT_TIMEOUT: int = 15

    METRICS_TEXTFILE: str | None = None
    VERIFY_PUBLIC_ENDPOINT: bool = False


settings = Settings()
