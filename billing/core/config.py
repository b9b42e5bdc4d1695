from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator


def _parse_bool(v):
    if isinstance(v, str):
        return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
    return bool(v)


class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'billing_user'
    POSTGRES_PASSWORD: str = 'billing_pass'
    POSTGRES_DB: str = 'billing_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Sobrescribe la URL construida (tests, sqlite)

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # MinIO settings (imágenes de firma y PDFs firmados)
    MINIO_HOST: str = 'minio'
    MINIO_PORT: int = 9000
    MINIO_PUBLIC_HOST: str = 'localhost'
    MINIO_PUBLIC_PORT: int = 9000
    MINIO_ACCESS_KEY: str = 'minioadmin'
    MINIO_SECRET_KEY: str = 'minioadmin'
    MINIO_BUCKET_NAME: str = 'billing'
    MINIO_USE_SSL: bool = False
    SIGNATURE_STORAGE_ENABLED: bool = False

    # JWT emitido por el proveedor de identidad externo
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    AUTH_AUDIENCE: Optional[str] = None

    # Email settings
    EMAIL_SMTP_SERVER: str = 'smtp.gmail.com'
    EMAIL_SMTP_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_USERNAME: str = ''
    EMAIL_PASSWORD: str = ''
    EMAIL_FROM: str = ''
    EMAIL_FROM_NAME: str = 'Facturación'
    FRONTEND_URL: str = 'http://localhost:3000'

    # Facturación
    DEFAULT_TAX_RATE: float = 18.0
    DEFAULT_CURRENCY: str = 'PEN'
    DEFAULT_INVOICE_SERIES: str = 'F001'
    DEFAULT_QUOTE_SERIES: str = 'P001'
    SEQUENCE_ALLOCATION_RETRIES: int = 3

    # Firma electrónica
    SIGNATURE_REQUEST_TTL_DAYS: int = 7
    SIGNATURE_DEFAULT_CONSENT_TEXT: str = 'I agree to electronically sign this document.'
    SIGNATURE_EMAIL_LOCALE: str = 'es'

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def minio_endpoint(self) -> str:
        return f"{self.MINIO_HOST}:{self.MINIO_PORT}"

    @property
    def minio_public_endpoint(self) -> str:
        return f"{self.MINIO_PUBLIC_HOST}:{self.MINIO_PUBLIC_PORT}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        return _parse_bool(v)

    @field_validator("MINIO_USE_SSL", "SIGNATURE_STORAGE_ENABLED", mode="before")
    @classmethod
    def parse_storage_flags(cls, v):
        return _parse_bool(v)

    @field_validator("EMAIL_USE_TLS", mode="before")
    @classmethod
    def parse_email_tls(cls, v):
        return _parse_bool(v)

settings = Settings()
