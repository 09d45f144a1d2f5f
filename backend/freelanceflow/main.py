from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from freelanceflow.core.config import settings
from freelanceflow.core.logging import setup_logging, get_logger
from freelanceflow.core.rate_limit import limiter, rate_limit_exceeded_handler
from freelanceflow.routers import health, subscriptions, webhooks_stripe
from freelanceflow.services.errors import BillingError, GatewayUnavailable

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    logger.info("アプリケーション起動")
    yield
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """課金エラー → 種別ごとのHTTPステータス + UI表示用の詳細"""
    logger.info(f"課金エラー: {exc.kind} path={request.url.path} detail={exc.detail}")
    headers = None
    if isinstance(exc, GatewayUnavailable):
        headers = {"Retry-After": str(exc.detail.get("retry_after", 30))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "target_tier": "変更先プラン",
    "target_interval": "請求間隔",
    "request_id": "リクエストID",
    "x-user-id": "ユーザーID",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "literal_error":
        return f"{fj}は {ctx.get('expected', '')} のいずれかを指定してください"
    if t == "string_too_short":
        return f"{fj}は{ctx.get('min_length', '')}文字以上で入力してください"
    if t == "string_too_long":
        return f"{fj}は{ctx.get('max_length', '')}文字以下で入力してください"
    if t == "missing":
        return f"{fj}は必須です"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"kind": "validation_error", "detail": "、".join(messages)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(subscriptions.router)
app.include_router(webhooks_stripe.router)
