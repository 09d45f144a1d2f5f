"""プランカタログ: 階層順・利用上限・料金表・Stripe Price ID"""
from typing import Optional

from freelanceflow.core.config import settings

FREE = "free"
PROFESSIONAL = "professional"
PREMIUM = "premium"

MONTHLY = "monthly"
ANNUAL = "annual"

TIERS = (FREE, PROFESSIONAL, PREMIUM)
PAID_TIERS = (PROFESSIONAL, PREMIUM)
INTERVALS = (MONTHLY, ANNUAL)

# free < professional < premium
TIER_RANK = {FREE: 0, PROFESSIONAL: 1, PREMIUM: 2}

# この値以上の上限は無制限扱い
UNLIMITED_THRESHOLD = 999999

MONTHLY_LIMITS = {
    FREE: 10,
    PROFESSIONAL: 75,
    PREMIUM: UNLIMITED_THRESHOLD,
}


def tier_rank(tier: str) -> int:
    if tier not in TIER_RANK:
        raise ValueError(f"不明なプラン: {tier}")
    return TIER_RANK[tier]


def monthly_limit_for(tier: str) -> int:
    return MONTHLY_LIMITS[tier]


def is_unlimited(tier: str, monthly_limit: int) -> bool:
    return tier == PREMIUM or monthly_limit >= UNLIMITED_THRESHOLD


def price_for(tier: str, interval: Optional[str]) -> int:
    """料金 (セント)。freeは常に0"""
    if tier == FREE:
        return 0
    prices = {
        (PROFESSIONAL, MONTHLY): settings.PRICE_PROFESSIONAL_MONTHLY,
        (PROFESSIONAL, ANNUAL): settings.PRICE_PROFESSIONAL_ANNUAL,
        (PREMIUM, MONTHLY): settings.PRICE_PREMIUM_MONTHLY,
        (PREMIUM, ANNUAL): settings.PRICE_PREMIUM_ANNUAL,
    }
    key = (tier, interval)
    if key not in prices:
        raise ValueError(f"料金が定義されていません: tier={tier}, interval={interval}")
    return prices[key]


def price_ref_for(tier: str, interval: str) -> str:
    """Stripe Price ID"""
    refs = {
        (PROFESSIONAL, MONTHLY): settings.STRIPE_PROFESSIONAL_MONTHLY_PRICE_ID,
        (PROFESSIONAL, ANNUAL): settings.STRIPE_PROFESSIONAL_ANNUAL_PRICE_ID,
        (PREMIUM, MONTHLY): settings.STRIPE_PREMIUM_MONTHLY_PRICE_ID,
        (PREMIUM, ANNUAL): settings.STRIPE_PREMIUM_ANNUAL_PRICE_ID,
    }
    ref = refs.get((tier, interval))
    if not ref:
        raise ValueError(f"Stripe Price IDが未設定です: tier={tier}, interval={interval}")
    return ref


def plan_for_price_ref(price_ref: str) -> Optional[tuple[str, str]]:
    """Stripe Price ID → (tier, interval) 逆引き"""
    for tier in PAID_TIERS:
        for interval in INTERVALS:
            try:
                if price_ref_for(tier, interval) == price_ref:
                    return tier, interval
            except ValueError:
                continue
    return None
