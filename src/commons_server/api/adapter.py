"""
Boundary adapter: wire events in, service calls out.

:meth:`EventDispatcher.dispatch` is the single entry point shared by
``POST /events`` and the WebSocket route. For one inbound event it:

1. looks up the payload model and the required permission for the type
2. refuses banned users and banned addresses
3. checks the permission against the server-side role
4. validates the payload (unknown fields are rejected)
5. calls the owning service and serializes its :class:`Result`

Responses are plain dicts:

    {"ok": True, "event": "chat.send", "data": {...}}
    {"ok": False, "event": "chat.send", "error": {"code": ..., "message": ..., "detail": ...}}

Services emit their outbound events on the bus themselves; the
:class:`~commons_server.api.hub.ConnectionHub` fans them out. An unexpected
exception becomes ``INTERNAL_ERROR`` and is recorded in the performance
monitor's error log. Every dispatch duration feeds
``PerformanceMonitor.track_websocket_message``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from pydantic import ValidationError

from commons_server.api import models
from commons_server.api.auth import SessionRegistry
from commons_server.api.permissions import can_manage_role, has_permission, permission_for_event
from commons_server.comms.chat import CHANNELS, SCOPED_CHANNELS, scope_for
from commons_server.core.container import Services
from commons_server.core.principal import Principal
from commons_server.core.results import ErrorKind, Result
from commons_server.trade.offers import Offer

logger = logging.getLogger(__name__)

Handler = Callable[[Principal, Any], Any]


def serialize(value: Any) -> Any:
    """Turn service return values into JSON-ready data."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


def _validation_detail(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def _offer(payload: models.OfferPayload) -> Offer:
    return Offer(items=tuple(payload.items), currency=payload.currency)


class EventDispatcher:
    """Routes wire events to the services in a :class:`Services` graph."""

    def __init__(self, services: Services, sessions: SessionRegistry | None = None) -> None:
        self.services = services
        self.sessions = sessions or SessionRegistry(services.clock)
        self._handlers: dict[str, Handler] = {
            "chat.send": self._chat_send,
            "chat.history": self._chat_history,
            "dm.send": self._dm_send,
            "dm.conversation": self._dm_conversation,
            "dm.markRead": self._dm_mark_read,
            "dm.block": self._dm_block,
            "dm.unblock": self._dm_unblock,
            "mail.send": self._mail_send,
            "mail.fetch": self._mail_fetch,
            "mail.read": self._mail_read,
            "mail.delete": self._mail_delete,
            "mail.archive": self._mail_archive,
            "forum.createTopic": self._forum_create,
            "forum.reply": self._forum_reply,
            "forum.get": self._forum_get,
            "forum.list": self._forum_list,
            "forum.lock": self._forum_lock,
            "forum.pin": self._forum_pin,
            "forum.delete": self._forum_delete,
            "forum.deleteReply": self._forum_delete_reply,
            "trade.propose": self._trade_propose,
            "trade.update": self._trade_update,
            "trade.confirm": self._trade_confirm,
            "trade.cancel": self._trade_cancel,
            "trade.get": self._trade_get,
            "trade.history": self._trade_history,
            "admin.muteUser": self._admin_mute,
            "admin.unmuteUser": self._admin_unmute,
            "admin.banUser": self._admin_ban,
            "admin.unbanUser": self._admin_unban,
            "admin.banIp": self._admin_ban_ip,
            "admin.unbanIp": self._admin_unban_ip,
            "admin.slowMode": self._admin_slow_mode,
            "admin.broadcast": self._admin_broadcast,
            "admin.systemMail": self._admin_system_mail,
            "admin.grantModerator": self._admin_grant_moderator,
            "admin.revokeModerator": self._admin_revoke_moderator,
        }

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def effective_principal(self, principal: Principal) -> Principal:
        """Apply a runtime moderator grant to a plain player."""
        if not principal.is_moderator and self.services.moderation.is_moderator(principal.user_id):
            return replace(principal, role="moderator")
        return principal

    async def dispatch(self, principal: Principal, event_type: str, payload: dict | None) -> dict:
        monitor = self.services.monitor
        started = time.perf_counter()
        try:
            result = await self._dispatch(principal, event_type, payload or {})
            if result.kind is ErrorKind.INTERNAL_ERROR:
                monitor.record_error(event_type, result.error.message)
        except Exception as exc:  # noqa: BLE001
            logger.error("Unhandled error dispatching %s for %s", event_type, principal.user_id, exc_info=True)
            monitor.record_error(event_type, exc)
            result = Result.failure(ErrorKind.INTERNAL_ERROR)
        finally:
            monitor.track_websocket_message((time.perf_counter() - started) * 1000)

        if result.ok:
            return {"ok": True, "event": event_type, "data": serialize(result.value)}
        return {"ok": False, "event": event_type, "error": result.error.to_dict()}

    async def _dispatch(self, principal: Principal, event_type: str, payload: dict) -> Result:
        handler = self._handlers.get(event_type)
        model = models.PAYLOAD_MODELS.get(event_type)
        if handler is None or model is None:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"Unknown event type: {event_type}")

        moderation = self.services.moderation
        if moderation.is_banned(principal.user_id) or moderation.is_ip_banned(principal.ip):
            return Result.failure(ErrorKind.BANNED)

        principal = self.effective_principal(principal)
        permission = permission_for_event(event_type)
        if permission is not None and not has_permission(principal.role, permission):
            logger.warning("%s (%s) denied %s", principal.user_id, principal.role, event_type)
            return Result.failure(ErrorKind.UNAUTHORIZED)

        try:
            parsed = model.model_validate(payload)
        except ValidationError as exc:
            return Result.failure(ErrorKind.VALIDATION_FAILED, _validation_detail(exc))

        outcome = handler(principal, parsed)
        if isinstance(outcome, Awaitable):
            outcome = await outcome
        if isinstance(outcome, Result):
            return outcome
        return Result.success(outcome)

    # =========================================================================
    # CHAT AND DIRECT MESSAGES
    # =========================================================================

    def _chat_send(self, p: Principal, m: models.ChatSendPayload) -> Result:
        return self.services.chat.send(p, m.channel, m.body)

    def _chat_history(self, p: Principal, m: models.ChatHistoryPayload) -> Result:
        scope = ""
        if m.channel in SCOPED_CHANNELS:
            resolved = scope_for(p, m.channel)
            if not resolved.ok:
                return resolved
            scope = resolved.value
        return self.services.chat.history(m.channel, m.before, m.limit, scope=scope)

    def _dm_send(self, p: Principal, m: models.DmSendPayload) -> Result:
        return self.services.dms.send(p, m.to, m.body)

    def _dm_conversation(self, p: Principal, m: models.DmConversationPayload) -> dict:
        dms = self.services.dms
        return {
            "with": m.with_,
            "messages": dms.conversation(p.user_id, m.with_, m.before, m.limit),
            "unread": dms.unread_count(p.user_id),
        }

    def _dm_mark_read(self, p: Principal, m: models.DmPeerPayload) -> dict:
        marked = self.services.dms.mark_read(p.user_id, m.with_)
        return {"with": m.with_, "marked": marked, "unread": self.services.dms.unread_count(p.user_id)}

    def _dm_block(self, p: Principal, m: models.DmTargetPayload) -> Result:
        result = self.services.dms.block(p.user_id, m.target)
        if not result.ok:
            return result
        return Result.success({"blocked": self.services.dms.blocked_by(p.user_id)})

    def _dm_unblock(self, p: Principal, m: models.DmTargetPayload) -> Result:
        result = self.services.dms.unblock(p.user_id, m.target)
        if not result.ok:
            return result
        return Result.success({"removed": result.value, "blocked": self.services.dms.blocked_by(p.user_id)})

    # =========================================================================
    # MAIL
    # =========================================================================

    def _mail_send(self, p: Principal, m: models.MailSendPayload) -> Result:
        return self.services.mail.send(p, m.to, m.subject, m.body)

    def _mail_fetch(self, p: Principal, m: models.EmptyPayload) -> dict:
        mailbox = self.services.mail.mailbox(p.user_id)
        return {**mailbox, "unread": self.services.mail.unread_count(p.user_id)}

    def _mail_read(self, p: Principal, m: models.MailIdPayload) -> Result:
        return self.services.mail.mark_read(m.mail_id, p.user_id)

    def _mail_delete(self, p: Principal, m: models.MailIdPayload) -> Result:
        result = self.services.mail.delete(m.mail_id, p.user_id)
        return result if not result.ok else Result.success({"deleted": m.mail_id})

    def _mail_archive(self, p: Principal, m: models.MailIdPayload) -> Result:
        return self.services.mail.archive(m.mail_id, p.user_id)

    # =========================================================================
    # FORUM
    # =========================================================================

    def _forum_create(self, p: Principal, m: models.ForumCreateTopicPayload) -> Result:
        return self.services.forum.create_topic(p, m.category, m.title, m.body)

    def _forum_reply(self, p: Principal, m: models.ForumReplyPayload) -> Result:
        return self.services.forum.reply(m.topic_id, p, m.body)

    def _forum_get(self, p: Principal, m: models.ForumGetPayload) -> Result:
        return self.services.forum.get_topic(m.topic_id, p.user_id, m.page)

    def _forum_list(self, p: Principal, m: models.ForumListPayload) -> Result:
        return self.services.forum.list_topics(m.category, m.page, m.per_page)

    def _forum_lock(self, p: Principal, m: models.ForumFlagPayload) -> Result:
        return self.services.forum.set_locked(p, m.topic_id, m.flag)

    def _forum_pin(self, p: Principal, m: models.ForumFlagPayload) -> Result:
        return self.services.forum.set_pinned(p, m.topic_id, m.flag)

    def _forum_delete(self, p: Principal, m: models.ForumFlagPayload) -> Result:
        result = self.services.forum.delete_topic(p, m.topic_id)
        return result if not result.ok else Result.success({"deleted": m.topic_id})

    def _forum_delete_reply(self, p: Principal, m: models.ForumDeleteReplyPayload) -> Result:
        result = self.services.forum.delete_reply(p, m.topic_id, m.reply_id)
        return result if not result.ok else Result.success({"deleted": m.reply_id})

    # =========================================================================
    # TRADE
    # =========================================================================

    async def _trade_propose(self, p: Principal, m: models.TradeProposePayload) -> Result:
        return await self.services.trades.propose(p.user_id, m.to, _offer(m.offer))

    async def _trade_update(self, p: Principal, m: models.TradeUpdatePayload) -> Result:
        return await self.services.trades.update_offer(p.user_id, m.trade_id, _offer(m.offer))

    async def _trade_confirm(self, p: Principal, m: models.TradeIdPayload) -> Result:
        return await self.services.trades.confirm(p.user_id, m.trade_id)

    async def _trade_cancel(self, p: Principal, m: models.TradeIdPayload) -> Result:
        return await self.services.trades.cancel(p.user_id, m.trade_id)

    def _trade_get(self, p: Principal, m: models.TradeGetPayload) -> Result:
        if m.trade_id is None:
            return Result.success(self.services.trades.get_player_active_trade(p.user_id))
        return self.services.trades.get_trade(m.trade_id, p.user_id)

    def _trade_history(self, p: Principal, m: models.TradeHistoryPayload) -> list:
        return self.services.trades.history(p.user_id, m.limit)

    # =========================================================================
    # ADMIN
    # =========================================================================

    def _outranks(self, p: Principal, target: str) -> Result | None:
        if target == p.user_id:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "You cannot sanction yourself")
        if not can_manage_role(p.role, self.sessions.role_of(target)):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Target outranks you")
        return None

    def _admin_mute(self, p: Principal, m: models.SanctionPayload) -> Result:
        denied = self._outranks(p, m.target)
        if denied:
            return denied
        duration = None if m.permanent else m.duration_ms
        return self.services.moderation.mute(m.target, duration, m.reason, issued_by=p.user_id)

    def _admin_unmute(self, p: Principal, m: models.SanctionPayload) -> dict:
        return {"target": m.target, "removed": self.services.moderation.unmute(m.target)}

    def _admin_ban(self, p: Principal, m: models.SanctionPayload) -> Result:
        denied = self._outranks(p, m.target)
        if denied:
            return denied
        duration = None if m.permanent else m.duration_ms
        result = self.services.moderation.ban(m.target, duration, m.reason, issued_by=p.user_id)
        if result.ok:
            closed = self.sessions.close_user(m.target)
            logger.info("Closed %d sessions of banned user %s", closed, m.target)
        return result

    def _admin_unban(self, p: Principal, m: models.SanctionPayload) -> dict:
        return {"target": m.target, "removed": self.services.moderation.unban(m.target)}

    def _admin_ban_ip(self, p: Principal, m: models.SanctionPayload) -> Result:
        duration = None if m.permanent else m.duration_ms
        return self.services.moderation.ban_ip(m.target, duration, m.reason, issued_by=p.user_id)

    def _admin_unban_ip(self, p: Principal, m: models.SanctionPayload) -> dict:
        return {"target": m.target, "removed": self.services.moderation.unban_ip(m.target)}

    def _admin_slow_mode(self, p: Principal, m: models.SlowModePayload) -> Result:
        if m.channel not in CHANNELS:
            return Result.failure(ErrorKind.UNKNOWN_CHANNEL, f"Unknown channel: {m.channel}")
        self.services.moderation.set_slow_mode(m.channel, m.interval_ms)
        return Result.success({"channel": m.channel, "interval_ms": max(0, m.interval_ms)})

    def _admin_broadcast(self, p: Principal, m: models.BroadcastPayload) -> Result:
        return self.services.chat.broadcast_system(m.channel, m.body, scope=m.scope)

    def _admin_system_mail(self, p: Principal, m: models.SystemMailPayload) -> Result:
        return self.services.mail.send_system(m.to, m.subject, m.body)

    def _admin_grant_moderator(self, p: Principal, m: models.ModeratorPayload) -> Result:
        if m.target == p.user_id:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "You cannot change your own role")
        self.services.moderation.grant_moderator(m.target)
        logger.info("%s granted moderator to %s", p.user_id, m.target)
        return Result.success({"target": m.target, "moderator": True})

    def _admin_revoke_moderator(self, p: Principal, m: models.ModeratorPayload) -> dict:
        removed = self.services.moderation.revoke_moderator(m.target)
        logger.info("%s revoked moderator from %s", p.user_id, m.target)
        return {"target": m.target, "removed": removed, "moderator": False}
