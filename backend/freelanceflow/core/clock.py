"""時刻ユーティリティ: DBにはタイムゾーンなしUTCで保存する"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """現在時刻 (naive UTC)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    """Stripeのepoch秒 → naive UTC"""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
