"""
Order Service — 設定

接続先や管理者などの設定は環境変数から読み込む。
テストでは Settings を直接組み立てて create_app() に渡す。
"""

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    redis_url: str = "redis://localhost:6379"
    admin_emails: frozenset[str] = field(default_factory=frozenset)
    default_page_size: int = 10
    max_page_size: int = 100
    create_schema: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        admins = os.environ.get("ADMIN_EMAILS", "")
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            admin_emails=frozenset(
                e.strip().lower() for e in admins.split(",") if e.strip()
            ),
            default_page_size=int(os.environ.get("DEFAULT_PAGE_SIZE", "10")),
            max_page_size=int(os.environ.get("MAX_PAGE_SIZE", "100")),
            create_schema=_env_bool("CREATE_SCHEMA", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

    def is_admin_email(self, email: str | None) -> bool:
        return bool(email) and email.lower() in self.admin_emails
