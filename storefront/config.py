"""
Storefront — 設定

すべて環境変数から読み込む。未設定の場合は開発用のデフォルト値を使う。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./storefront.db")
# 空文字ならイベント発行を行わない
REDIS_URL = os.environ.get("REDIS_URL", "")

JWT_SECRET = os.environ.get("JWT_SECRET", "fallback-secret")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

PLACEMENT_MAX_ATTEMPTS = int(os.environ.get("PLACEMENT_MAX_ATTEMPTS", "3"))
PLACEMENT_TIMEOUT_SECONDS = float(os.environ.get("PLACEMENT_TIMEOUT_SECONDS", "10"))
PLACEMENT_RETRY_BACKOFF_SECONDS = float(
    os.environ.get("PLACEMENT_RETRY_BACKOFF_SECONDS", "0.02")
)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
