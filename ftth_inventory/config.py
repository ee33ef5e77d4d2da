from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # token 签名
    secret_key: str = "dev_secret"
    refresh_secret_key: str = "dev_refresh_secret"
    access_token_expire_minutes: int = 24 * 60
    refresh_token_expire_days: int = 7

    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_secure: bool = False

    database_url: str = "sqlite:///./inventory.db"
    default_warehouse_id: str = "WH-001"

    artacom_base_url: str = "https://billingftth.my.id"
    artacom_username: str = ""
    artacom_password: str = ""
    artacom_timeout: float = 30.0

    # 启动初始化
    seed_default_roles: bool = True
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Administrator"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
