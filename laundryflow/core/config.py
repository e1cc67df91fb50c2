from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    jwt_secret: str = "dev-only-secret-change-me-in-env-file"
    jwt_alg: str = "HS256"
    access_ttl_min: int = 30

    # storage backend: in-memory unless USE_MONGO=1
    use_mongo: bool = False
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "laundryflow"

    # customer notifications are POSTed here by the outbox worker
    notify_url: str | None = None
    outbox_max_attempts: int = 6
    outbox_poll_seconds: float = 0.5
    run_outbox_worker: bool = False

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
