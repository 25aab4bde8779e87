from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from practice_coach.models import Quota


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    remaining: int
    total: int
    unlimited: bool = False


class UsageSource(Protocol):
    async def sum_usage_for_invitation(self, invitation_id: str) -> int: ...


def check_quota(quota: Quota, used_tokens: int) -> QuotaStatus:
    if quota.tokens is None:
        return QuotaStatus(allowed=True, remaining=0, total=0, unlimited=True)
    remaining = quota.tokens - used_tokens
    return QuotaStatus(allowed=remaining > 0, remaining=max(0, remaining), total=quota.tokens)


async def get_invitation_quota_status(store: UsageSource, invitation_id: str, quota: Quota) -> QuotaStatus:
    used_tokens = await store.sum_usage_for_invitation(invitation_id)
    return check_quota(quota, used_tokens)


def is_low(status: QuotaStatus, warning_ratio: float) -> bool:
    if status.unlimited or not status.allowed:
        return False
    return status.remaining < status.total * warning_ratio
