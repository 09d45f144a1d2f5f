"""レート制限設定（slowapi使用）"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from freelanceflow.core.config import settings


def get_client_key(request: Request) -> str:
    """
    レート制限キーを取得
    認証ゲートウェイ経由ならユーザーID、なければクライアントIP
    """
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # カンマ区切りの最初のIPを取得
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# Limiterインスタンス（アプリケーション全体で共有）
limiter = Limiter(
    key_func=get_client_key,
    default_limits=["100/minute"],
    storage_uri="memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    レート制限超過時のカスタムエラーハンドラ
    """
    return JSONResponse(
        status_code=429,
        content={
            "kind": "rate_limited",
            "detail": "リクエスト回数が上限を超えました。しばらく待ってから再度お試しください。",
            "retry_after": exc.detail,
        },
    )


PLAN_CHANGE_RATE_LIMIT = "10/minute"   # プラン変更・解約: 10回/分
PREVIEW_RATE_LIMIT = "30/minute"       # 日割りプレビュー: 30回/分
USAGE_RATE_LIMIT = "120/minute"        # 利用枠消費: 120回/分
