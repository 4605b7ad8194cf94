"""
Asynchronous mail.

Each user owns a mailbox with three folders. Sending stores two distinct
records: the recipient's inbox copy and the sender's sent copy, each with its
own id, so deleting one never affects the other. System mail has no sent
copy.

Folder limits:

    inbox     settings.inbox_limit (200)
    sent      settings.sent_limit  (100)
    archived  unbounded

When a folder overflows its oldest entry is evicted. Archived mail is never
evicted and never reaped.

The reaper removes non-archived mail older than ``retention_days``. It runs
at most once per ``reap_interval_seconds`` unless forced.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass

from commons_server.comms.content_filter import ContentFilter
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter
from commons_server.config import MailSettings
from commons_server.core.bus import EventBus
from commons_server.core.clock import MS_PER_DAY, MS_PER_SECOND, Clock, IdGenerator
from commons_server.core.events import Events
from commons_server.core.principal import Principal
from commons_server.core.results import ErrorKind, Result

logger = logging.getLogger(__name__)

FOLDERS: tuple[str, ...] = ("inbox", "sent", "archived")
SYSTEM_SENDER = "System"
MAX_SUBJECT_LENGTH = 100
MAX_BODY_LENGTH = 5000


@dataclass(slots=True)
class Mail:
    id: str
    from_id: str
    to_id: str
    subject: str
    body: str
    created_at: int
    read_at: int | None = None
    folder: str = "inbox"
    system: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Mail:
        return cls(
            id=data["id"],
            from_id=data["from_id"],
            to_id=data["to_id"],
            subject=data["subject"],
            body=data.get("body", ""),
            created_at=data["created_at"],
            read_at=data.get("read_at"),
            folder=data.get("folder", "inbox"),
            system=data.get("system", False),
        )


def _empty_mailbox() -> dict[str, list[Mail]]:
    return {folder: [] for folder in FOLDERS}


class MailService:
    """Owns every mailbox."""

    def __init__(
        self,
        moderation: ModerationRegistry,
        rate_limiter: RateLimiter,
        bus: EventBus,
        clock: Clock,
        ids: IdGenerator,
        settings: MailSettings | None = None,
        content_filter: ContentFilter | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.moderation = moderation
        self.rate_limiter = rate_limiter
        self.bus = bus
        self.clock = clock
        self.ids = ids
        self.settings = settings or MailSettings()
        self.content_filter = content_filter or ContentFilter()
        self._on_change = on_change
        self._mailboxes: dict[str, dict[str, list[Mail]]] = {}
        self._last_reap: int | None = None

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _box(self, user: str) -> dict[str, list[Mail]]:
        if user not in self._mailboxes:
            self._mailboxes[user] = _empty_mailbox()
        return self._mailboxes[user]

    def _folder_limit(self, folder: str) -> int | None:
        if folder == "inbox":
            return self.settings.inbox_limit
        if folder == "sent":
            return self.settings.sent_limit
        return None

    def _store(self, owner: str, mail: Mail) -> None:
        folder = self._box(owner)[mail.folder]
        folder.append(mail)
        limit = self._folder_limit(mail.folder)
        if limit is not None and len(folder) > limit:
            evicted = folder.pop(0)
            logger.debug("Evicted mail %s from %s/%s", evicted.id, owner, mail.folder)

    @staticmethod
    def _check_sizes(subject: str, body: str) -> Result[None]:
        if not subject.strip():
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Subject is required")
        if len(subject) > MAX_SUBJECT_LENGTH:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG, f"Subject too long (max {MAX_SUBJECT_LENGTH} characters)"
            )
        if len(body) > MAX_BODY_LENGTH:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG, f"Body too long (max {MAX_BODY_LENGTH} characters)"
            )
        return Result.success()

    # =========================================================================
    # SENDING
    # =========================================================================

    def send(self, sender: Principal, recipient: str, subject: str, body: str) -> Result[Mail]:
        """
        Send player mail.

        Returns:
            The recipient's inbox copy, or a refusal.
        """
        if not recipient:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Recipient is required")
        sizes = self._check_sizes(subject, body)
        if not sizes.ok:
            return Result.failure(sizes.error.kind, sizes.error.detail)

        now = self.clock.now_ms()
        from_id = sender.user_id
        if self.moderation.is_banned(from_id, now):
            return Result.failure(ErrorKind.BANNED)
        if self.moderation.is_muted(from_id, now):
            return Result.failure(ErrorKind.MUTED)

        clean_subject = self.content_filter.apply(subject).text
        if not clean_subject:
            return Result.failure(ErrorKind.EMPTY_AFTER_FILTER, "Subject cannot be empty")
        clean_body = self.content_filter.apply(body).text if body else ""
        # Link replacement can lengthen the text past the caps.
        filtered_sizes = self._check_sizes(clean_subject, clean_body)
        if not filtered_sizes.ok:
            return Result.failure(
                filtered_sizes.error.kind, f"{filtered_sizes.error.detail} after filtering"
            )

        if not self.rate_limiter.allow(from_id, "mail", now):
            return Result.failure(ErrorKind.RATE_LIMITED)

        return Result.success(self._deliver(from_id, recipient, clean_subject, clean_body, now, system=False))

    def send_system(self, recipient: str, subject: str, body: str) -> Result[Mail]:
        """Mail from ``System``. No sent copy, no filtering, no limits."""
        if not recipient:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Recipient is required")
        sizes = self._check_sizes(subject, body)
        if not sizes.ok:
            return Result.failure(sizes.error.kind, sizes.error.detail)
        mail = self._deliver(SYSTEM_SENDER, recipient, subject, body, self.clock.now_ms(), system=True)
        logger.info("System mail %s sent to %s", mail.id, recipient)
        return Result.success(mail)

    def _deliver(
        self, from_id: str, to_id: str, subject: str, body: str, now: int, *, system: bool
    ) -> Mail:
        inbox_copy = Mail(
            id=self.ids.new_id(),
            from_id=from_id,
            to_id=to_id,
            subject=subject,
            body=body,
            created_at=now,
            folder="inbox",
            system=system,
        )
        self._store(to_id, inbox_copy)

        if not system:
            sent_copy = Mail(
                id=self.ids.new_id(),
                from_id=from_id,
                to_id=to_id,
                subject=subject,
                body=body,
                created_at=now,
                read_at=now,
                folder="sent",
            )
            self._store(from_id, sent_copy)

        self.bus.emit(
            Events.MAIL_RECEIVED,
            {"mail": inbox_copy.to_dict(), "recipients": [to_id]},
            source="mail",
        )
        self._changed()
        return inbox_copy

    # =========================================================================
    # MAILBOX OPERATIONS
    # =========================================================================

    def mailbox(self, user: str) -> dict[str, list[Mail]]:
        """Every folder of ``user``, newest first."""
        box = self._mailboxes.get(user) or _empty_mailbox()
        return {folder: list(reversed(box[folder])) for folder in FOLDERS}

    def unread_count(self, user: str) -> int:
        box = self._mailboxes.get(user)
        if box is None:
            return 0
        return sum(1 for m in box["inbox"] if m.read_at is None) + sum(
            1 for m in box["archived"] if m.read_at is None and m.to_id == user
        )

    def _find(self, mail_id: str, user: str) -> tuple[str, int] | None:
        box = self._mailboxes.get(user)
        if box is None:
            return None
        for folder in FOLDERS:
            for index, mail in enumerate(box[folder]):
                if mail.id == mail_id:
                    return folder, index
        return None

    def mark_read(self, mail_id: str, user: str) -> Result[Mail]:
        found = self._find(mail_id, user)
        if found is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Mail not found")
        folder, index = found
        mail = self._mailboxes[user][folder][index]
        if mail.read_at is None:
            mail.read_at = self.clock.now_ms()
            self._changed()
        return Result.success(mail)

    def delete(self, mail_id: str, user: str) -> Result[None]:
        found = self._find(mail_id, user)
        if found is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Mail not found")
        folder, index = found
        del self._mailboxes[user][folder][index]
        self._changed()
        return Result.success()

    def archive(self, mail_id: str, user: str) -> Result[Mail]:
        """Move a mail into ``archived``. Archiving twice is a no-op."""
        found = self._find(mail_id, user)
        if found is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Mail not found")
        folder, index = found
        box = self._mailboxes[user]
        if folder == "archived":
            return Result.success(box[folder][index])
        mail = box[folder].pop(index)
        mail.folder = "archived"
        box["archived"].append(mail)
        self._changed()
        return Result.success(mail)

    # =========================================================================
    # RETENTION
    # =========================================================================

    def reap(self, now: int | None = None, force: bool = False) -> int:
        """
        Remove non-archived mail older than the retention period.

        Args:
            now: Reference time; defaults to the service clock.
            force: Ignore the once-per-interval guard.

        Returns:
            Number of mails removed. ``0`` when skipped by the interval guard.
        """
        now = self.clock.now_ms() if now is None else now
        interval_ms = self.settings.reap_interval_seconds * MS_PER_SECOND
        if not force and self._last_reap is not None and now - self._last_reap < interval_ms:
            return 0
        self._last_reap = now

        cutoff_ms = self.settings.retention_days * MS_PER_DAY
        removed = 0
        for user, box in self._mailboxes.items():
            for folder in ("inbox", "sent"):
                kept = [m for m in box[folder] if now - m.created_at <= cutoff_ms]
                expired = len(box[folder]) - len(kept)
                if expired:
                    logger.debug("Reaped %d mails from %s/%s", expired, user, folder)
                    box[folder] = kept
                    removed += expired

        if removed:
            logger.info("Mail reaper removed %d expired mails", removed)
            self._changed()
        else:
            logger.debug("Mail reaper found nothing to remove")
        return removed

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> dict:
        return {
            "mailboxes": {
                user: {folder: [m.to_dict() for m in mails] for folder, mails in box.items()}
                for user, box in self._mailboxes.items()
            },
            "last_reap": self._last_reap,
        }

    def restore(self, data: dict) -> None:
        self._mailboxes = {}
        for user, folders in data.get("mailboxes", {}).items():
            box = _empty_mailbox()
            for folder in FOLDERS:
                box[folder] = [Mail.from_dict(m) for m in folders.get(folder, [])]
            self._mailboxes[user] = box
        self._last_reap = data.get("last_reap")
        logger.info("Restored %d mailboxes", len(self._mailboxes))
