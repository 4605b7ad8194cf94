"""
Moderation registry: mutes, bans, IP bans, slow mode and moderator flags.

Every ingress path (chat, direct messages, mail, forum posts) consults the
registry before accepting player text. Sanctions carry an optional expiry;
an expired sanction is simply inactive when read, so no reaper is needed.
Expired entries are dropped lazily the next time the registry is saved.

IP bans accept either a single address or a CIDR block and are matched with
:mod:`ipaddress`, so ``10.0.0.0/8`` covers ``10.1.2.3``.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass

from commons_server.core.bus import EventBus
from commons_server.core.clock import Clock, SystemClock
from commons_server.core.events import Events
from commons_server.core.results import ErrorKind, Result

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Sanction:
    """
    A mute or ban.

    Attributes:
        reason: Free text shown to the sanctioned user.
        until: Expiry in epoch ms, or ``None`` for permanent.
        issued_by: Moderator id, when known.
        issued_at: Epoch ms at which the sanction was recorded.
    """

    reason: str
    until: int | None
    issued_by: str | None
    issued_at: int

    def is_active(self, now: int) -> bool:
        return self.until is None or now < self.until

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Sanction:
        return cls(
            reason=data.get("reason", ""),
            until=data.get("until"),
            issued_by=data.get("issued_by"),
            issued_at=data.get("issued_at", 0),
        )


def _normalize_network(target: str) -> str:
    """Canonical CIDR string for an address or block. Raises ``ValueError``."""
    return str(ipaddress.ip_network(target.strip(), strict=False))


class ModerationRegistry:
    """Holds every moderation decision. Owned by the composition root."""

    def __init__(
        self,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._bus = bus
        self._on_change = on_change
        self._mutes: dict[str, Sanction] = {}
        self._bans: dict[str, Sanction] = {}
        self._ip_bans: dict[str, Sanction] = {}
        self._slow_mode: dict[str, int] = {}
        self._last_send: dict[tuple[str, str], int] = {}
        self._moderators: set[str] = set()

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _now(self, now: int | None) -> int:
        return self._clock.now_ms() if now is None else now

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _sanction(self, duration_ms: int | None, reason: str, issued_by: str | None) -> Sanction:
        now = self._clock.now_ms()
        until = None if duration_ms is None else now + duration_ms
        return Sanction(reason=reason, until=until, issued_by=issued_by, issued_at=now)

    @staticmethod
    def _check_duration(duration_ms: int | None) -> Result[None]:
        if duration_ms is not None and duration_ms <= 0:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Duration must be positive")
        return Result.success()

    def _emit(self, event_type: str, user_id: str, sanction: Sanction) -> None:
        if self._bus is None:
            return
        self._bus.emit(
            event_type,
            {
                "user_id": user_id,
                "until": sanction.until,
                "reason": sanction.reason,
                "recipients": [user_id],
            },
            source="moderation",
        )

    # =========================================================================
    # MUTES
    # =========================================================================

    def mute(
        self,
        user_id: str,
        duration_ms: int | None = None,
        reason: str = "",
        issued_by: str | None = None,
    ) -> Result[Sanction]:
        """Mute ``user_id`` for ``duration_ms``, or permanently when ``None``."""
        check = self._check_duration(duration_ms)
        if not check.ok:
            return Result.failure(check.error.kind, check.error.detail)

        sanction = self._sanction(duration_ms, reason, issued_by)
        self._mutes[user_id] = sanction
        logger.info("Muted %s until %s (%s)", user_id, sanction.until or "forever", reason or "no reason")
        self._emit(Events.USER_MUTED, user_id, sanction)
        self._changed()
        return Result.success(sanction)

    def unmute(self, user_id: str) -> bool:
        removed = self._mutes.pop(user_id, None) is not None
        if removed:
            logger.info("Unmuted %s", user_id)
            self._changed()
        return removed

    def is_muted(self, user_id: str, now: int | None = None) -> bool:
        sanction = self._mutes.get(user_id)
        return sanction is not None and sanction.is_active(self._now(now))

    # =========================================================================
    # BANS
    # =========================================================================

    def ban(
        self,
        user_id: str,
        duration_ms: int | None = None,
        reason: str = "",
        issued_by: str | None = None,
    ) -> Result[Sanction]:
        """Ban ``user_id`` for ``duration_ms``, or permanently when ``None``."""
        check = self._check_duration(duration_ms)
        if not check.ok:
            return Result.failure(check.error.kind, check.error.detail)

        sanction = self._sanction(duration_ms, reason, issued_by)
        self._bans[user_id] = sanction
        logger.warning("Banned %s until %s (%s)", user_id, sanction.until or "forever", reason or "no reason")
        self._emit(Events.USER_BANNED, user_id, sanction)
        self._changed()
        return Result.success(sanction)

    def unban(self, user_id: str) -> bool:
        removed = self._bans.pop(user_id, None) is not None
        if removed:
            logger.info("Unbanned %s", user_id)
            self._changed()
        return removed

    def is_banned(self, user_id: str, now: int | None = None) -> bool:
        sanction = self._bans.get(user_id)
        return sanction is not None and sanction.is_active(self._now(now))

    def get_ban(self, user_id: str, now: int | None = None) -> Sanction | None:
        sanction = self._bans.get(user_id)
        if sanction is not None and sanction.is_active(self._now(now)):
            return sanction
        return None

    # =========================================================================
    # IP BANS
    # =========================================================================

    def ban_ip(
        self,
        target: str,
        duration_ms: int | None = None,
        reason: str = "",
        issued_by: str | None = None,
    ) -> Result[Sanction]:
        """Ban an address or CIDR block."""
        try:
            network = _normalize_network(target)
        except ValueError:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"Invalid IP address or range: {target}")
        check = self._check_duration(duration_ms)
        if not check.ok:
            return Result.failure(check.error.kind, check.error.detail)

        sanction = self._sanction(duration_ms, reason, issued_by)
        self._ip_bans[network] = sanction
        logger.warning("Banned IP range %s until %s", network, sanction.until or "forever")
        self._changed()
        return Result.success(sanction)

    def unban_ip(self, target: str) -> bool:
        try:
            network = _normalize_network(target)
        except ValueError:
            return False
        removed = self._ip_bans.pop(network, None) is not None
        if removed:
            logger.info("Unbanned IP range %s", network)
            self._changed()
        return removed

    def is_ip_banned(self, ip: str | None, now: int | None = None) -> bool:
        """Whether ``ip`` falls inside any active IP ban. Unparseable input is never banned."""
        if not ip:
            return False
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        now = self._now(now)
        for network, sanction in self._ip_bans.items():
            if not sanction.is_active(now):
                continue
            block = ipaddress.ip_network(network)
            if address.version == block.version and address in block:
                return True
        return False

    # =========================================================================
    # SLOW MODE
    # =========================================================================

    def set_slow_mode(self, channel: str, interval_ms: int) -> None:
        """Require ``interval_ms`` between sends per user in ``channel``. ``0`` disables."""
        if interval_ms <= 0:
            self._slow_mode.pop(channel, None)
            self._last_send = {key: at for key, at in self._last_send.items() if key[0] != channel}
            logger.info("Slow mode disabled on %s", channel)
        else:
            self._slow_mode[channel] = interval_ms
            logger.info("Slow mode on %s: %d ms", channel, interval_ms)
        self._changed()

    def slow_mode_interval(self, channel: str) -> int:
        return self._slow_mode.get(channel, 0)

    def slow_mode_remaining(self, user_id: str, channel: str, now: int) -> int:
        """Milliseconds until ``user_id`` may send in ``channel`` again (0 means now)."""
        interval = self._slow_mode.get(channel, 0)
        if not interval:
            return 0
        last = self._last_send.get((channel, user_id))
        if last is None:
            return 0
        return max(0, last + interval - now)

    def record_send(self, user_id: str, channel: str, now: int) -> None:
        """Remember a send for slow mode. Ignored on channels without it."""
        if channel in self._slow_mode:
            self._last_send[(channel, user_id)] = now

    def tracked_sends(self) -> int:
        return len(self._last_send)

    def prune_send_records(self, now: int) -> int:
        """Drop send records whose slow-mode wait has passed. Returns how many."""
        stale = [
            key
            for key, at in self._last_send.items()
            if at + self._slow_mode.get(key[0], 0) <= now
        ]
        for key in stale:
            del self._last_send[key]
        return len(stale)

    # =========================================================================
    # MODERATOR FLAGS
    # =========================================================================

    def grant_moderator(self, user_id: str) -> None:
        self._moderators.add(user_id)
        self._changed()

    def revoke_moderator(self, user_id: str) -> bool:
        if user_id not in self._moderators:
            return False
        self._moderators.discard(user_id)
        self._changed()
        return True

    def is_moderator(self, user_id: str) -> bool:
        return user_id in self._moderators

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> dict:
        """Serializable state. Expired sanctions are left out."""
        now = self._clock.now_ms()

        def live(entries: dict[str, Sanction]) -> dict[str, dict]:
            return {key: s.to_dict() for key, s in entries.items() if s.is_active(now)}

        return {
            "mutes": live(self._mutes),
            "bans": live(self._bans),
            "ip_bans": live(self._ip_bans),
            "slow_mode": dict(self._slow_mode),
            "moderators": sorted(self._moderators),
        }

    def restore(self, data: dict) -> None:
        self._mutes = {k: Sanction.from_dict(v) for k, v in data.get("mutes", {}).items()}
        self._bans = {k: Sanction.from_dict(v) for k, v in data.get("bans", {}).items()}
        self._ip_bans = {k: Sanction.from_dict(v) for k, v in data.get("ip_bans", {}).items()}
        self._slow_mode = {k: int(v) for k, v in data.get("slow_mode", {}).items()}
        self._moderators = set(data.get("moderators", []))
        logger.info(
            "Restored moderation state: %d mutes, %d bans, %d IP bans",
            len(self._mutes),
            len(self._bans),
            len(self._ip_bans),
        )
