from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    JWT_SECRET: str
    JWT_ISSUER: str = "plateyard"

    ACCESS_TTL_MIN: int = 15
    REFRESH_TTL_DAYS: int = 30

    COOKIE_DOMAIN: str | None = None
    COOKIE_SECURE: bool = False
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    ADMIN_EMAIL: str

    # public storefront origin, used for checkout redirects and emails
    BASE_URL: str = "http://localhost:3000"

    STRIPE_API_KEY: str | None = None
    STRIPE_PUBLISHABLE_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_CURRENCY: str = "USD"

    MAILGUN_API_KEY: str | None = None
    MAILGUN_DOMAIN: str | None = None
    MAILGUN_FROM_EMAIL: str = "The Plate Yard <noreply@carolinabumperplates.com>"

    CRON_SECRET: str | None = None

    MEDIA_DIR: str = "media"
    MEDIA_URL: str = "/media"

    @property
    def is_prod(self) -> bool:
        return self.ENV.lower() in {"prod", "production"}


settings = Settings()
