import redis as sync_redis
from freelanceflow.core.config import settings

# 同期Redis (API/Scheduler共用)
sync_redis_pool = sync_redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


def get_sync_redis() -> sync_redis.Redis:
    """同期Redisクライアント取得"""
    return sync_redis.Redis(connection_pool=sync_redis_pool)


def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        return bool(get_sync_redis().ping())
    except sync_redis.RedisError:
        return False
