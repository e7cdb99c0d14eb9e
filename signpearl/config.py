import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = Field(default=os.getenv("DATABASE_URL", "mongodb://localhost:27017"))
    database_name: str = Field(default=os.getenv("DATABASE_NAME", "signpearl"))

    # Tokens issued by the external auth provider
    jwt_secret: str = Field(default=os.getenv("JWT_SECRET", "change-me"))
    jwt_algorithm: str = Field(default=os.getenv("JWT_ALGORITHM", "HS256"))
    jwt_audience: Optional[str] = Field(default=os.getenv("JWT_AUDIENCE", "authenticated"))

    # Signing links point at the front end, file URLs at this API
    app_base_url: str = Field(default=os.getenv("APP_BASE_URL", "http://localhost:5173"))
    public_api_url: str = Field(default=os.getenv("PUBLIC_API_URL", "http://localhost:8000"))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))

    signing_token_ttl_days: int = Field(default=int(os.getenv("SIGNING_TOKEN_TTL_DAYS", "30")))

    storage_bucket: str = Field(default=os.getenv("STORAGE_BUCKET", "documents"))
    max_upload_bytes: int = Field(
        default=int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))
    )  # 20MB

    completion_strict_pages: bool = Field(default=_env_bool("COMPLETION_STRICT_PAGES", "false"))
    completion_font_size: int = Field(default=int(os.getenv("COMPLETION_FONT_SIZE", "12")))

    # SendGrid
    sendgrid_api_key: Optional[str] = Field(default=os.getenv("SENDGRID_API_KEY"))
    sendgrid_api_url: str = Field(
        default=os.getenv("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")
    )
    email_from: str = Field(default=os.getenv("EMAIL_FROM", "support@signpearl.com"))
    email_timeout_seconds: float = Field(default=float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10")))

    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
