"""購読スナップショットのRedisキャッシュ

DBが正。キャッシュは GET /api/subscription の読み取り専用。
購読を変更する処理はコミット後に invalidate を呼ぶ。
Redis障害時はキャッシュなしで動作する。
"""
import json
from typing import Optional

import redis

from freelanceflow.core.config import settings
from freelanceflow.core.logging import get_logger
from freelanceflow.core.redis import get_sync_redis
from freelanceflow.models.subscription import Subscription
from freelanceflow.schemas.subscription import SubscriptionInfo
from freelanceflow.services import plan_catalog

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "subscription:snapshot:"


def _cache_key(user_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{user_id}"


def snapshot(sub: Subscription) -> SubscriptionInfo:
    info = SubscriptionInfo.model_validate(sub)
    info.unlimited = plan_catalog.is_unlimited(sub.tier, sub.monthly_limit)
    return info


def get_cached(user_id: str) -> Optional[SubscriptionInfo]:
    try:
        raw = get_sync_redis().get(_cache_key(user_id))
    except redis.RedisError as e:
        logger.warning(f"購読キャッシュ取得失敗: user_id={user_id}, {e}")
        return None
    if not raw:
        return None
    return SubscriptionInfo.model_validate(json.loads(raw))


def store(info: SubscriptionInfo):
    try:
        get_sync_redis().setex(
            _cache_key(info.user_id),
            settings.SUBSCRIPTION_CACHE_TTL_SECONDS,
            info.model_dump_json(),
        )
    except redis.RedisError as e:
        logger.warning(f"購読キャッシュ保存失敗: user_id={info.user_id}, {e}")


def invalidate(user_id: str):
    try:
        get_sync_redis().delete(_cache_key(user_id))
    except redis.RedisError as e:
        logger.warning(f"購読キャッシュ削除失敗: user_id={user_id}, {e}")
