"""
Identity — 認証 (Identity Provider との境界)

Authorization: Bearer <JWT> を検証して購入者 ID を取り出す。
トークンの発行 (ユーザー登録・ログイン) はこのサービスの範囲外。

  ヘッダーなし / Bearer 形式でない  → Unauthenticated (401)
  署名不正 / 期限切れ / userId なし → Forbidden (403)
"""

import jwt
from fastapi import Depends, Header
from pydantic import BaseModel, ConfigDict

from ..config import JWT_ALGORITHM, JWT_SECRET
from ..errors import Forbidden, Unauthenticated


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def authenticate(
    credential: str | None,
    secret: str = JWT_SECRET,
    algorithm: str = JWT_ALGORITHM,
) -> Identity:
    if not credential:
        raise Unauthenticated("Authorization token required")
    try:
        claims = jwt.decode(credential, secret, algorithms=[algorithm])
    except jwt.InvalidTokenError:
        raise Forbidden("Invalid token") from None

    user_id = claims.get("userId")
    if not user_id:
        raise Forbidden("Invalid token")
    return Identity(user_id=str(user_id), role=claims.get("role") or "user")


# ── FastAPI 依存関数 ─────────────────────────────


async def current_identity(authorization: str | None = Header(default=None)) -> Identity:
    return authenticate(bearer_token(authorization))


async def require_admin(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Admin role required")
    return identity
