from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    recognition_language: str = "en-US"
    # Interim results below this confidence are not surfaced
    confidence_threshold: float = 0.7
    auto_restart: bool = True
    max_restart_attempts: int = 5
    restart_delay_seconds: float = 1.0
    language_change_delay_seconds: float = 0.5
    speech_locale: str = "en-US"
    default_language: str = "en"

    model_config = SettingsConfigDict(env_file="../../.env", env_file_encoding="utf-8", case_sensitive=False, secrets_dir="/run/secrets")


settings = Settings()
