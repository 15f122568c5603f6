from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"
    database_url: str | None = None
    role_cache_ttl_seconds: float = 300.0
    grants_cache_ttl_seconds: float = 30.0
    unresolvable_policy: str = "allow_admin_defaults"  # allow_admin_defaults | deny_all
    super_admin_emails: list[str] = []
    max_permission_sessions: int = 1000

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
