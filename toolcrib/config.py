from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # fields that may appear in .env
    secret_key: str
    access_token_expire_minutes: int = 120

    database_url: str = "sqlite:///./toolcrib.db"
    store_timeout_seconds: float = 5.0
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.1
    store_retry_max_delay: float = 2.0

    image_dir: str = "./images"
    image_base_url: str = "/images"
    image_max_bytes: int = 5 * 1024 * 1024

    bulk_import_max_quantity: int = 500
    # false keeps the historical behaviour: any non-empty receipt closes the request
    receipt_requires_all_lines: bool = False

    notifier_url: str | None = None
    notifier_timeout: float = 5.0
    notification_retry_attempts: int = 3

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
