from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    database_path: str = "data/storyboard.db"
    db_busy_timeout_sec: float = 30.0

    ai_api_base_url: str = ""
    ai_api_key: str = ""
    video_model: str = "sora-2"
    submit_timeout_sec: int = 60
    status_timeout_sec: int = 20

    video_poll_interval_ms: int = 5000
    video_max_poll_duration_ms: int = 3_600_000

    video_storyboard_token_cost: int = 3
    video_character_token_cost: int = 3

    admin_api_token: str = ""


settings = Settings()
