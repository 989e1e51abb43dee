"""
Admission control for processing requests.

Rules:
- Paid tiers (anything but ``free``) are always admitted.
- Free users are admitted while ``usage_count < usage_limit``. Admission
  reserves one unit of quota atomically; the orchestrator gives it back if
  the job fails.
- Guests are admitted while their IP has fewer than ``guest_daily_limit``
  audit entries for the current UTC day. If those entries cannot be read
  the guest is admitted anyway, so an audit-store outage never blocks
  traffic. The cost is that guests are unmetered for the outage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timezone
from typing import Callable, Optional

from .accounts import AccountStore
from .audit import AuditLog
from .errors import QuotaExceeded
from .models import Caller, SubscriptionTier
from .utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    """An allowed request. ``reserved`` is True when a quota unit was taken."""

    reserved: bool = False
    guest_count: Optional[int] = None


class UsageGate:
    def __init__(
        self,
        accounts: AccountStore,
        audit_log: AuditLog,
        guest_daily_limit: int = 3,
        clock: Callable = utc_now,
    ) -> None:
        self._accounts = accounts
        self._audit_log = audit_log
        self.guest_daily_limit = guest_daily_limit
        self._clock = clock

    def admit(self, caller: Caller) -> Admission:
        """
        Decide whether ``caller`` may start a new operation.

        Returns:
            Admission describing the allowed request

        Raises:
            QuotaExceeded: With reason ``usage_limit_exceeded`` for a free
                user at their limit, or ``daily_limit_exceeded`` for a guest
                over the daily allowance.
        """
        user = caller.user
        if user is not None:
            if user.subscription_tier != SubscriptionTier.FREE:
                return Admission()
            return self._admit_free_user(caller)
        return self._admit_guest(caller)

    def _admit_free_user(self, caller: Caller) -> Admission:
        user = caller.user
        if self._accounts.reserve_usage(user.id):
            return Admission(reserved=True)

        current = self._accounts.get_user(user.id) or user
        logger.info(f"User {user.id} denied: usage {current.usage_count}/{current.usage_limit}")
        raise QuotaExceeded(
            QuotaExceeded.USAGE_LIMIT,
            "Usage limit exceeded",
            {
                "message": "You have reached your monthly usage limit. Please upgrade to continue.",
                "current_usage": current.usage_count,
                "usage_limit": current.usage_limit,
                "upgrade_url": "/pricing",
            },
        )

    def _admit_guest(self, caller: Caller) -> Admission:
        today = self._clock().astimezone(timezone.utc).date()
        try:
            count = self._audit_log.count_guest_events(caller.ip_address or "", today)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Guest usage check error, admitting request: {exc}")
            return Admission()

        if count >= self.guest_daily_limit:
            logger.info(f"Guest {caller.ip_address} denied: {count} operations today")
            raise QuotaExceeded(
                QuotaExceeded.DAILY_LIMIT,
                "Daily limit exceeded",
                {
                    "message": "You have reached the daily limit for guest users. "
                    "Please sign up for a free account to continue.",
                    "daily_limit": self.guest_daily_limit,
                    "signup_url": "/signup",
                },
            )
        return Admission(guest_count=count)

    def release(self, caller: Caller, admission: Admission) -> None:
        """Return a reserved quota unit after a failed job."""
        if admission.reserved and caller.user is not None:
            self._accounts.release_usage(caller.user.id)
