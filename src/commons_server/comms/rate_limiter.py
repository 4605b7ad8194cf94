"""
Sliding-window rate limiting keyed by ``(principal, bucket)``.

A bucket is a traffic class (``chat``, ``dm``, ``mail``, ``forum``). Each
bucket has its own :class:`RateLimitRule`. The limiter remembers the
timestamps of accepted events per key in a deque and prunes them lazily
whenever the key is consulted.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    """At most ``limit`` accepted events within any ``window_ms`` span."""

    limit: int
    window_ms: int


DEFAULT_RULES: dict[str, RateLimitRule] = {
    "chat": RateLimitRule(limit=10, window_ms=10_000),
    "dm": RateLimitRule(limit=10, window_ms=10_000),
    "mail": RateLimitRule(limit=5, window_ms=60_000),
    "forum": RateLimitRule(limit=5, window_ms=60_000),
}

FALLBACK_BUCKET = "chat"


class RateLimiter:
    """
    Per-principal sliding window.

    Args:
        rules: Bucket name to rule. Buckets without a rule use the ``chat``
            rule.
        enabled: When ``False`` every call to :meth:`allow` succeeds and
            nothing is recorded.
    """

    def __init__(self, rules: dict[str, RateLimitRule] | None = None, enabled: bool = True) -> None:
        self.rules: dict[str, RateLimitRule] = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)
        self.enabled = enabled
        # (principal, bucket) -> accepted timestamps, oldest first
        self._windows: dict[tuple[str, str], deque[int]] = {}

    def rule_for(self, bucket: str) -> RateLimitRule:
        return self.rules.get(bucket) or self.rules[FALLBACK_BUCKET]

    def set_rule(self, bucket: str, rule: RateLimitRule) -> None:
        self.rules[bucket] = rule
        logger.info("Rate limit for %r set to %d per %d ms", bucket, rule.limit, rule.window_ms)

    def _prune(self, key: tuple[str, str], now: int) -> deque[int]:
        window = self._windows.setdefault(key, deque())
        span = self.rule_for(key[1]).window_ms
        while window and now - window[0] >= span:
            window.popleft()
        return window

    def allow(self, principal: str, bucket: str, now: int) -> bool:
        """
        Consult and record one event.

        Returns:
            ``True`` if the event is accepted (and recorded), ``False`` if the
            window is saturated. A refusal records nothing.
        """
        if not self.enabled:
            return True

        key = (principal, bucket)
        window = self._prune(key, now)
        if len(window) >= self.rule_for(bucket).limit:
            logger.debug("Rate limited %s on %s (%d in window)", principal, bucket, len(window))
            return False

        window.append(now)
        return True

    def remaining(self, principal: str, bucket: str, now: int) -> int:
        """Events still allowed for this key in the current window."""
        limit = self.rule_for(bucket).limit
        if not self.enabled:
            return limit
        key = (principal, bucket)
        if key not in self._windows:
            return limit
        return max(0, limit - len(self._prune(key, now)))

    def reset(self, principal: str, bucket: str | None = None) -> None:
        """Forget recorded events for one bucket, or for every bucket when ``bucket`` is ``None``."""
        if bucket is not None:
            self._windows.pop((principal, bucket), None)
            return
        for key in [k for k in self._windows if k[0] == principal]:
            del self._windows[key]

    def cleanup(self, now: int) -> int:
        """
        Prune every key and drop the ones left empty.

        Returns:
            Number of keys removed.
        """
        removed = 0
        for key in list(self._windows):
            if not self._prune(key, now):
                del self._windows[key]
                removed += 1
        if removed:
            logger.debug("Rate limiter cleanup removed %d idle keys", removed)
        return removed

    def tracked_keys(self) -> int:
        return len(self._windows)
