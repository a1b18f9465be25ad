"""Quota, cooldown and loop-prevention decisions for incoming messages."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from ..core.datetime_utils import local_now, midnight_millis, to_millis
from ..core.models import AdmissionReason, Counters, Decision, MailMessage

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Limits applied to every persona."""

    max_daily_emails: int
    cooldown_period_ms: int
    managed_addresses: tuple[str, ...] = ()


def sender_key(message: MailMessage) -> str | None:
    """Normalise the sender address used as the cooldown history key."""
    if not message.sender:
        return None
    return message.sender.strip().lower()


def roll_over(counters: Counters, now: datetime) -> bool:
    """Reset the daily count when ``now`` falls on a later day than ``last_reset``."""
    today = midnight_millis(now)
    if today > counters.last_reset:
        LOGGER.info(
            "New day started; resetting daily count (was %s)", counters.daily_count
        )
        counters.daily_count = 0
        counters.last_reset = today
        return True
    return False


def admit(
    counters: Counters,
    message: MailMessage,
    policy: RateLimitPolicy,
    now: datetime,
) -> Decision:
    """Decide whether ``message`` may be answered; first matching rule wins.

    The daily rollover is applied to ``counters`` before anything else and is
    the only mutation performed here.
    """
    roll_over(counters, now)

    if counters.daily_count >= policy.max_daily_emails:
        LOGGER.warning(
            "Daily email limit (%s) reached. Skipping until tomorrow.",
            policy.max_daily_emails,
        )
        return Decision.rejected(AdmissionReason.DAILY_LIMIT)

    sender = sender_key(message)
    if sender is not None:
        last_response = counters.sender_history.get(sender)
        if (
            last_response is not None
            and to_millis(now) - last_response < policy.cooldown_period_ms
        ):
            LOGGER.info(
                'Skipping email "%s" - cooldown period active for sender %s',
                message.subject,
                sender,
            )
            return Decision.rejected(AdmissionReason.COOLDOWN)

    if _managed_address_in_cc(message.cc, policy.managed_addresses):
        LOGGER.info(
            'Skipping email "%s" because a managed address is in CC',
            message.subject,
        )
        return Decision.rejected(AdmissionReason.SELF_CC_LOOP)

    return Decision.allowed()


def commit(counters: Counters, message: MailMessage, now: datetime) -> Counters:
    """Record a successfully answered message; call exactly once per reply."""
    counters.daily_count += 1
    sender = sender_key(message)
    if sender is not None:
        stamp = to_millis(now)
        previous = counters.sender_history.get(sender)
        counters.sender_history[sender] = (
            stamp if previous is None else max(previous, stamp)
        )
    return counters


def _managed_address_in_cc(cc: Iterable[str], managed: Iterable[str]) -> bool:
    lowered_cc = [entry.lower() for entry in cc]
    if not lowered_cc:
        return False
    for address in managed:
        needle = address.strip().lower()
        if needle and any(needle in entry for entry in lowered_cc):
            return True
    return False


class RateLimiter:
    """Bind a :class:`RateLimitPolicy` and a clock to :func:`admit`/:func:`commit`."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        *,
        clock: Callable[[], datetime] = local_now,
        debug: bool = False,
    ) -> None:
        self.policy = policy
        self._clock = clock
        self._debug = debug

    def admit(
        self, counters: Counters, message: MailMessage, *, now: datetime | None = None
    ) -> Decision:
        decision = admit(counters, message, self.policy, now or self._clock())
        if self._debug:
            LOGGER.debug(
                "Admission for %s from %s: %s (daily %s/%s)",
                message.identity,
                message.sender,
                decision.reason.value,
                counters.daily_count,
                self.policy.max_daily_emails,
            )
        return decision

    def commit(
        self, counters: Counters, message: MailMessage, *, now: datetime | None = None
    ) -> Counters:
        return commit(counters, message, now or self._clock())


__all__ = [
    "RateLimitPolicy",
    "RateLimiter",
    "admit",
    "commit",
    "roll_over",
    "sender_key",
]
