from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "entry-image-localizer"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    cors_origins: list[str] = ["*"]

    uploads_path: str = "/app/uploads"
    images_url_path: str = "/assets/images"
    max_image_size: int = 0
    max_fetch_bytes: int = 10 * 1024 * 1024
    fetch_timeout: float = 15.0
    proxies: dict[str, list[str]] = {}
    proxy_files: dict[str, str] = {}
    proxy_strategy: str = "round-robin"
    fetch_max_retries: int = 3
    proxy_blacklist_threshold: int = 3
    proxy_blacklist_ttl: float = 300.0

    block_private_hosts: bool = True
    max_concurrent_downloads: int = 5
    process_timeout: float = 60.0

    download_images_enabled: bool = False
    wallabag_url: str = ""


settings = Settings()
