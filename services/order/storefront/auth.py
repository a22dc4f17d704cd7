"""
Order Service — 呼び出し元の識別

セッション解決は外部 (認証ゲートウェイ) の責務。
ゲートウェイは検証済みのメールアドレスを X-User-Email ヘッダで渡し、
ここでは users テーブルと管理者リストから Caller を組み立てるだけ。
"""

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import NotFound

IDENTITY_HEADER = "X-User-Email"


@dataclass(frozen=True)
class Caller:
    user_id: str
    email: str
    is_admin: bool = False


async def resolve_caller(
    session: AsyncSession,
    settings: Settings,
    email: str | None,
    *,
    strict: bool = True,
) -> Caller | None:
    """
    メールアドレスから Caller を返す。匿名なら None。

    strict=False (チェックアウト) では未登録のメールもゲストとして None を返す。
    """
    if not email:
        return None

    result = await session.execute(
        text("SELECT id, email FROM users WHERE LOWER(email) = LOWER(:email)"),
        {"email": email.strip()},
    )
    row = result.fetchone()
    # 読み取りのみ。後続のコマンドが自分でトランザクションを開始できるよう閉じておく。
    await session.commit()
    if row is None:
        if strict:
            raise NotFound("User not found")
        return None
    return Caller(row.id, row.email, settings.is_admin_email(row.email))
