"""
Subscription state and active pricing plan ids for an agency.

Only locally persisted billing rows are read; the billing provider is never
called from here.

Plan id resolution:
    1. Base subscription price id, if status is ACTIVE/TRIALING and the
       current period has not ended
    2. Every active add-on price id
    De-duplicated, discovery order preserved.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_authz.core.clock import ensure_utc, utcnow
from tenant_authz.models.billing import ENTITLING_STATUSES, AddOn, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    """Coarse subscription state used by the policy engine."""
    ACTIVE = "ACTIVE"
    TRIAL = "TRIAL"
    INACTIVE = "INACTIVE"
    MISSING = "MISSING"

    def allows_access(self) -> bool:
        return self in (SubscriptionState.ACTIVE, SubscriptionState.TRIAL)


def _parse_status(raw: Optional[str]) -> Optional[SubscriptionStatus]:
    try:
        return SubscriptionStatus((raw or "").upper())
    except ValueError:
        return None


def is_subscription_entitling(subscription: Subscription, now: datetime) -> bool:
    """True when the base subscription's price id currently grants entitlements."""
    period_end = ensure_utc(subscription.current_period_end_date)
    return (
        _parse_status(subscription.status) in ENTITLING_STATUSES
        and period_end is not None
        and period_end > now
    )


def compute_subscription_state(
    subscription: Optional[Subscription],
    now: Optional[datetime] = None,
) -> SubscriptionState:
    """
    Map a subscription row to a SubscriptionState.

    - no row -> MISSING
    - TRIALING within the period, or with a trial end still ahead -> TRIAL
    - ACTIVE within the period -> ACTIVE
    - anything else -> INACTIVE
    """
    if subscription is None:
        return SubscriptionState.MISSING

    now = ensure_utc(now) or utcnow()
    status = _parse_status(subscription.status)
    period_end = ensure_utc(subscription.current_period_end_date)
    in_period = period_end is not None and period_end > now

    if status == SubscriptionStatus.TRIALING:
        trial_end = ensure_utc(subscription.trial_ended_at)
        if in_period or (trial_end is not None and trial_end > now):
            return SubscriptionState.TRIAL
        return SubscriptionState.INACTIVE

    if status == SubscriptionStatus.ACTIVE and in_period:
        return SubscriptionState.ACTIVE

    return SubscriptionState.INACTIVE


async def get_agency_subscription(session: AsyncSession, agency_id: str) -> Optional[Subscription]:
    result = await session.execute(
        select(Subscription).where(Subscription.agency_id == agency_id).limit(1)
    )
    return result.scalars().first()


async def get_agency_subscription_state(
    session: AsyncSession,
    agency_id: str,
    now: Optional[datetime] = None,
) -> SubscriptionState:
    subscription = await get_agency_subscription(session, agency_id)
    return compute_subscription_state(subscription, now)


async def resolve_plan_ids_for_agency(
    session: AsyncSession,
    agency_id: str,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Collect active pricing plan ids (base subscription + active add-ons).

    Returns an empty list when nothing is active; callers treat that as
    "not entitled to anything".
    """
    now = ensure_utc(now) or utcnow()
    plan_ids: List[str] = []

    subscription = await get_agency_subscription(session, agency_id)
    if subscription is not None and is_subscription_entitling(subscription, now):
        plan_ids.append(subscription.price_id)

    result = await session.execute(
        select(AddOn.price_id)
        .where(AddOn.agency_id == agency_id, AddOn.active.is_(True))
        .order_by(AddOn.created_at, AddOn.id)
    )
    plan_ids.extend(result.scalars().all())

    deduped = list(dict.fromkeys(pid for pid in plan_ids if pid))
    logger.debug(
        "Resolved active plan ids",
        extra={"agency_id": agency_id, "plan_ids": deduped},
    )
    return deduped
