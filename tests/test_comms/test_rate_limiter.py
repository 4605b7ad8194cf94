"""Tests for the sliding-window rate limiter."""

import pytest

from commons_server.comms.rate_limiter import RateLimiter, RateLimitRule


class TestSlidingWindow:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_eleventh_chat_message_refused(self):
        limiter = RateLimiter()

        accepted = [limiter.allow("alice", "chat", now=i * 100) for i in range(10)]

        assert all(accepted)
        assert limiter.allow("alice", "chat", now=1_000) is False

    @pytest.mark.unit
    @pytest.mark.comms
    def test_window_slides(self):
        limiter = RateLimiter()
        for _ in range(10):
            limiter.allow("alice", "chat", now=0)

        assert limiter.allow("alice", "chat", now=9_999) is False
        assert limiter.allow("alice", "chat", now=10_100) is True

    @pytest.mark.unit
    @pytest.mark.comms
    def test_refusal_records_nothing(self):
        limiter = RateLimiter({"chat": RateLimitRule(limit=1, window_ms=1_000)})
        limiter.allow("alice", "chat", now=0)

        for t in (100, 200, 900):
            assert limiter.allow("alice", "chat", now=t) is False

        assert limiter.allow("alice", "chat", now=1_000) is True

    @pytest.mark.unit
    @pytest.mark.comms
    def test_keys_are_independent(self):
        limiter = RateLimiter()
        for _ in range(5):
            limiter.allow("alice", "mail", now=0)

        assert limiter.allow("alice", "mail", now=1) is False
        assert limiter.allow("bob", "mail", now=1) is True
        assert limiter.allow("alice", "chat", now=1) is True

    @pytest.mark.unit
    @pytest.mark.comms
    def test_unknown_bucket_uses_chat_rule(self):
        limiter = RateLimiter()

        assert limiter.rule_for("trade") == limiter.rule_for("chat")

    @pytest.mark.unit
    @pytest.mark.comms
    def test_disabled_always_allows(self):
        limiter = RateLimiter(enabled=False)

        assert all(limiter.allow("alice", "mail", now=0) for _ in range(50))
        assert limiter.tracked_keys() == 0
        assert limiter.remaining("alice", "mail", now=0) == 5


class TestBookkeeping:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_remaining(self):
        limiter = RateLimiter()

        assert limiter.remaining("alice", "forum", now=0) == 5
        limiter.allow("alice", "forum", now=0)
        limiter.allow("alice", "forum", now=10)
        assert limiter.remaining("alice", "forum", now=20) == 3
        assert limiter.remaining("alice", "forum", now=60_010) == 5

    @pytest.mark.unit
    @pytest.mark.comms
    def test_reset_single_bucket(self):
        limiter = RateLimiter()
        limiter.allow("alice", "chat", now=0)
        limiter.allow("alice", "dm", now=0)

        limiter.reset("alice", "chat")

        assert limiter.remaining("alice", "chat", now=0) == 10
        assert limiter.remaining("alice", "dm", now=0) == 9

    @pytest.mark.unit
    @pytest.mark.comms
    def test_reset_all_buckets(self):
        limiter = RateLimiter()
        limiter.allow("alice", "chat", now=0)
        limiter.allow("alice", "dm", now=0)
        limiter.allow("bob", "dm", now=0)

        limiter.reset("alice")

        assert limiter.tracked_keys() == 1

    @pytest.mark.unit
    @pytest.mark.comms
    def test_cleanup_drops_idle_keys(self):
        limiter = RateLimiter()
        limiter.allow("alice", "chat", now=0)
        limiter.allow("bob", "mail", now=0)

        removed = limiter.cleanup(now=10_000)

        assert removed == 1
        assert limiter.tracked_keys() == 1

    @pytest.mark.unit
    @pytest.mark.comms
    def test_set_rule(self):
        limiter = RateLimiter()
        limiter.set_rule("chat", RateLimitRule(limit=2, window_ms=1_000))

        assert limiter.allow("alice", "chat", now=0)
        assert limiter.allow("alice", "chat", now=0)
        assert not limiter.allow("alice", "chat", now=0)
