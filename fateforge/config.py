from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_DEFAULT_DB_URL = "sqlite+pysqlite:///./fateforge.db"


class Settings(BaseSettings):
    app_name: str = "fateforge"
    env: str = "dev"
    database_url: str = DEV_DEFAULT_DB_URL
    log_level: str = "INFO"

    llm_api_key: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_image_model: str = "gpt-image-1"
    llm_timeout_s: float = 30.0
    llm_image_timeout_s: float = 60.0
    llm_rate_limit_max_attempts: int = 3
    llm_retry_backoff_base_ms: int = 1000
    llm_retry_backoff_max_ms: int = 8000

    image_cooldown_s: float = 60.0
    default_save_slot: str = "default"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def _is_sqlite_memory_url(db_url: str) -> bool:
    candidate = (db_url or "").strip().lower()
    if not candidate.startswith("sqlite"):
        return False
    if ":memory:" in candidate:
        return True
    return candidate in {
        "sqlite://",
        "sqlite:///",
        "sqlite+pysqlite://",
        "sqlite+pysqlite:///",
    }


def validate_database_url(env: str, db_url: str | None) -> str:
    env_value = (env or "").strip().lower()
    if not db_url or not db_url.strip():
        return DEV_DEFAULT_DB_URL
    if env_value == "dev" and _is_sqlite_memory_url(db_url):
        raise RuntimeError(
            "DATABASE_URL cannot be sqlite :memory: when ENV=dev because sessions and saves would vanish "
            "between connections. "
            f"Set DATABASE_URL={DEV_DEFAULT_DB_URL} or another file-based sqlite url."
        )
    return db_url


settings = Settings()
settings.database_url = validate_database_url(settings.env, settings.database_url)
