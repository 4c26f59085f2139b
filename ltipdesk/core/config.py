import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _load_dotenv() -> None:
    dotenv_path = PROJECT_ROOT / ".env"
    if not dotenv_path.exists():
        return

    for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip("'").strip('"')
        os.environ.setdefault(key, value)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    app_name: str = Field(default="LTIP Desk")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    database_url: str = Field(default="sqlite:///./ltip.db")
    ltip_pool_size: int = Field(default=1_000_000, ge=0)
    default_cliff_percentage: Decimal = Field(default=Decimal("25"), ge=0, le=100)
    gold_price_per_gram: Decimal = Field(default=Decimal("595"), gt=0)
    cors_origins: str = Field(default="*")
    auth_enabled: bool = Field(default=True)
    identity_header: str = Field(default="X-Forwarded-Email")
    admin_emails: str = Field(default="")

    @property
    def cors_origin_list(self) -> list[str]:
        if self.cors_origins.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def admin_email_list(self) -> list[str]:
        return [email.strip().lower() for email in self.admin_emails.split(",") if email.strip()]

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_dotenv()
        return cls(
            app_name=os.getenv("APP_NAME", "LTIP Desk"),
            environment=os.getenv("ENVIRONMENT", "development"),
            debug=_env_flag("DEBUG", "false"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./ltip.db"),
            ltip_pool_size=int(os.getenv("LTIP_POOL_SIZE", "1000000")),
            default_cliff_percentage=Decimal(os.getenv("DEFAULT_CLIFF_PERCENTAGE", "25")),
            gold_price_per_gram=Decimal(os.getenv("GOLD_PRICE_PER_GRAM", "595")),
            cors_origins=os.getenv("CORS_ORIGINS", "*"),
            auth_enabled=_env_flag("AUTH_ENABLED", "true"),
            identity_header=os.getenv("IDENTITY_HEADER", "X-Forwarded-Email"),
            admin_emails=os.getenv("ADMIN_EMAILS", ""),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
