"""Chat ingestion: turns inbound chat messages into upload requests.

ChatHandler is the upload queue's ingestion collaborator. It

    - answers text commands (.ping, .help, .status, .queue, .health, .stats)
    - runs admin commands (.restrict, .warn, .audit, ...) for senders whose
      role grants the needed permission
    - filters media by type and size
    - stages media on disk and submits it to the UploadQueue
    - receives the queue's notifications and replies to the original message
    - deletes staged files when the queue says they are no longer needed

Only private (1:1) chats are handled; group traffic is ignored.
"""
from __future__ import annotations

import logging
import mimetypes
import time
from pathlib import PurePath
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from relay.admin import AdminError, AdminService, Permission, WarningLevel
from relay.config import AppSettings
from relay.uploads.notifier import UploadNotifier
from relay.uploads.schemas import DuplicateRecord, UploadRequest
from . import messages
from .schemas import InboundMessage, MediaPayload
from .staging import StagingArea

if TYPE_CHECKING:
    from relay.health.monitor import HealthMonitor
    from relay.uploads.queue import UploadQueue

logger = logging.getLogger(__name__)

GREETINGS = ("hi", "hello", "hey")

COMMAND_ALIASES: Dict[str, str] = {
    "p": "ping",
    "h": "help",
    "s": "status",
    "q": "queue",
    "stat": "stats",
}

# admin command -> permissions the sender needs
ADMIN_COMMANDS: Dict[str, Tuple[Permission, ...]] = {
    "admin": (),
    "restrict": (Permission.USER_RESTRICTION,),
    "unrestrict": (Permission.USER_RESTRICTION,),
    "restricted": (Permission.USER_RESTRICTION,),
    "warn": (Permission.USER_WARNING,),
    "warnings": (Permission.USER_WARNING,),
    "addadmin": (Permission.ADMIN_MANAGEMENT,),
    "removeadmin": (Permission.ADMIN_MANAGEMENT,),
    "setrole": (Permission.ADMIN_MANAGEMENT,),
    "audit": (Permission.AUDIT_LOGS,),
}

WARNING_LEVEL_WORDS = {
    "final": WarningLevel.FINAL_WARNING,
    "last": WarningLevel.LAST_WARNING,
}


def build_filename(media: MediaPayload, mimetype: str, now: Optional[float] = None) -> str:
    """Derive the upload filename: original stem + extension from the MIME type."""
    extension = mimetypes.guess_extension(mimetype) or ".bin"
    stem = ""
    if media.filename:
        stem = PurePath(media.filename.replace("\\", "/")).stem
    if not stem:
        now = time.time() if now is None else now
        stem = f"media_{int(now * 1000)}"
    return f"{stem}{extension}"


class ChatHandler(UploadNotifier):
    """Routes inbound chat messages and relays queue outcomes back."""

    def __init__(
        self,
        settings: AppSettings,
        staging: StagingArea,
        queue: Optional["UploadQueue"] = None,
        health: Optional["HealthMonitor"] = None,
        is_restricted: Optional[Callable[[str], bool]] = None,
        admin: Optional[AdminService] = None,
    ) -> None:
        self.settings = settings
        self.staging = staging
        self.queue = queue
        self.health = health
        self.admin = admin
        if is_restricted is None and admin is not None:
            is_restricted = admin.is_restricted
        self.is_restricted = is_restricted
        self._commands = {
            "ping": self._cmd_ping,
            "help": self._cmd_help,
            "status": self._cmd_status,
            "queue": self._cmd_queue,
            "health": self._cmd_health,
            "stats": self._cmd_stats,
        }
        self._admin_commands = {
            "admin": self._cmd_admin,
            "restrict": self._cmd_restrict,
            "unrestrict": self._cmd_unrestrict,
            "restricted": self._cmd_restricted,
            "warn": self._cmd_warn,
            "warnings": self._cmd_warnings,
            "addadmin": self._cmd_addadmin,
            "removeadmin": self._cmd_removeadmin,
            "setrole": self._cmd_setrole,
            "audit": self._cmd_audit,
        }

    def bind(self, queue: "UploadQueue", health: Optional["HealthMonitor"] = None) -> None:
        """Attach the queue (and monitor) once they exist.

        The queue is constructed with this handler as its notifier, so the
        two are wired together after both are built.
        """
        self.queue = queue
        if health is not None:
            self.health = health

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle(self, message: InboundMessage) -> None:
        if not message.is_private:
            return

        text = (message.body or "").strip()
        if text and await self._handle_text(message, text):
            return

        if not message.has_media:
            return

        if self.is_restricted is not None and self.is_restricted(message.sender):
            logger.info("Ignoring media from restricted user %s", message.sender)
            await message.reply(messages.RESTRICTED)
            return

        await self._handle_media(message)

    async def _handle_text(self, message: InboundMessage, text: str) -> bool:
        """Answer greetings and commands; returns True if the text was consumed."""
        lowered = text.lower()
        bot = self.settings.bot
        if lowered in GREETINGS:
            await message.reply(messages.welcome_text(bot.name))
            return True

        prefix = bot.command_prefix
        if not lowered.startswith(prefix) or len(lowered) == len(prefix):
            return False

        name = lowered[len(prefix):].split()[0]
        name = COMMAND_ALIASES.get(name, name)
        if name in self._admin_commands:
            await message.reply(self._run_admin_command(message, name))
            return True
        command = self._commands.get(name)
        if command is None:
            await message.reply(messages.UNKNOWN_COMMAND.format(prefix=prefix))
            return True

        await message.reply(command(message))
        return True

    async def _handle_media(self, message: InboundMessage) -> None:
        bot = self.settings.bot
        logger.info("Media received (1:1) from %s", message.sender)
        staged = None
        try:
            media = await message.download_media()
            if media is None or not media.data:
                logger.warning("No media data available to download.")
                return

            mimetype = media.mimetype.split(";")[0].strip().lower()
            if mimetype in bot.blocked_types:
                logger.info("Ignoring blocked media type %s from %s", mimetype, message.sender)
                return
            if mimetype not in bot.supported_types:
                await message.reply(messages.UNSUPPORTED_TYPE)
                return
            if media.size > bot.max_file_size:
                await message.reply(
                    messages.FILE_TOO_LARGE.format(max_size=messages.format_bytes(bot.max_file_size))
                )
                return
            if self.queue is None:
                raise RuntimeError("ChatHandler has no upload queue bound")

            filename = build_filename(media, mimetype)
            staged = await self.staging.stage(media.data, filename)
            request = UploadRequest(
                user_id=message.sender,
                file_path=str(staged),
                mime_type=mimetype,
                filename=filename,
                message_id=message.message_id,
                origin=message,
            )
            await self.queue.submit(request)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Error handling media from %s: %s", message.sender, exc)
            if staged is not None:
                await self.staging.discard(staged)
            try:
                await message.reply(messages.PROCESSING_ERROR)
            except Exception as reply_exc:  # pylint: disable=broad-except
                logger.warning("Could not send error reply to %s: %s", message.sender, reply_exc)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_ping(self, message: InboundMessage) -> str:
        return "pong"

    def _cmd_help(self, message: InboundMessage) -> str:
        return messages.help_text(self.settings.bot.name, self.settings.bot.command_prefix)

    def _cmd_status(self, message: InboundMessage) -> str:
        if self.queue is None:
            return "ℹ️ The upload queue is not running."
        status = self.queue.get_user_status(message.sender)
        return "\n".join([
            "📊 **Your uploads**",
            f"Queued: {status.queued}",
            f"Uploading: {status.active}",
            f"Completed: {status.completed}",
            f"Total: {status.total}",
        ])

    def _cmd_queue(self, message: InboundMessage) -> str:
        if self.queue is None:
            return "ℹ️ The upload queue is not running."
        status = self.queue.get_status()
        lines = [
            "📋 **Upload queue**",
            f"Waiting: {status.queue_length}",
            f"Active: {status.active_uploads}/{status.max_concurrent}",
        ]
        for item in status.active:
            lines.append(f"• {item.filename} – {item.progress}%")
        return "\n".join(lines)

    def _cmd_health(self, message: InboundMessage) -> str:
        if self.health is None:
            return messages.HEALTH_DISABLED
        summary = self.health.get_performance_summary()
        return "\n".join([
            "🩺 **Bot health**",
            f"Status: {summary.status.value}",
            f"Uptime: {summary.uptime}",
            f"Memory: {summary.memory}",
            f"Queue: {summary.uploads.queue_length} waiting, {summary.uploads.active_uploads} active",
            f"Success rate: {summary.uploads.success_rate}%",
            f"Last check: {summary.last_check}",
        ])

    def _cmd_stats(self, message: InboundMessage) -> str:
        if self.queue is None:
            return "ℹ️ The upload queue is not running."
        stats = self.queue.get_status().stats
        finished = stats.completed + stats.failed
        rate = f"{stats.completed / finished * 100:.1f}%" if finished else "n/a"
        return "\n".join([
            "📈 **Upload statistics**",
            f"Total: {stats.total}",
            f"Completed: {stats.completed}",
            f"Failed: {stats.failed}",
            f"In progress: {stats.in_progress}",
            f"Success rate: {rate}",
        ])

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    def _run_admin_command(self, message: InboundMessage, name: str) -> str:
        if self.admin is None:
            return messages.ADMIN_DISABLED
        check = self.admin.validate_command(message.sender, ADMIN_COMMANDS[name])
        if not check.allowed:
            logger.warning("Admin command %s refused for %s: %s", name, message.sender, check.reason)
            if check.role is None:
                return messages.NOT_ADMIN
            missing = ", ".join(p.value for p in check.missing_permissions)
            return messages.INSUFFICIENT_PERMISSIONS.format(permissions=missing)

        self.admin.touch(message.sender)
        args = (message.body or "").split()[1:]
        try:
            return self._admin_commands[name](message, args)
        except AdminError as exc:
            return messages.ADMIN_ERROR.format(error=exc)

    def _usage(self, usage: str) -> str:
        return messages.ADMIN_USAGE.format(usage=self.settings.bot.command_prefix + usage)

    def _cmd_admin(self, message: InboundMessage, args: List[str]) -> str:
        user = self.admin.get_admin(message.sender)
        return messages.admin_help_text(
            user.role, self.admin.permissions_for(message.sender), self.settings.bot.command_prefix
        )

    def _cmd_restrict(self, message: InboundMessage, args: List[str]) -> str:
        if not args:
            return self._usage("restrict <user> [hours] [reason]")
        target, rest = args[0], args[1:]
        duration: Optional[float] = None
        if rest:
            try:
                duration = float(rest[0].rstrip("hH"))
                rest = rest[1:]
            except ValueError:
                pass
        restriction = self.admin.restrict_user(target, " ".join(rest), message.sender, duration)
        return messages.RESTRICTED_USER.format(
            user=restriction.phone,
            duration=messages.format_restriction_duration(restriction.duration_hours),
            reason=restriction.reason or "none given",
        )

    def _cmd_unrestrict(self, message: InboundMessage, args: List[str]) -> str:
        if not args:
            return self._usage("unrestrict <user>")
        restriction = self.admin.unrestrict_user(args[0], message.sender)
        return messages.UNRESTRICTED_USER.format(user=restriction.phone)

    def _cmd_restricted(self, message: InboundMessage, args: List[str]) -> str:
        restrictions = self.admin.list_restrictions()
        if not restrictions:
            return messages.NO_RESTRICTIONS
        lines = ["🚫 **Restricted users**"]
        for r in restrictions:
            lines.append(
                f"• {r.phone} {messages.format_restriction_duration(r.duration_hours)}"
                f" – {r.reason or 'no reason'}"
            )
        return "\n".join(lines)

    def _cmd_warn(self, message: InboundMessage, args: List[str]) -> str:
        if len(args) < 2:
            return self._usage("warn <user> [final|last] <reason>")
        target, rest = args[0], args[1:]
        level = WARNING_LEVEL_WORDS.get(rest[0].lower(), WarningLevel.WARNING)
        if level is not WarningLevel.WARNING:
            rest = rest[1:]
        if not rest:
            return self._usage("warn <user> [final|last] <reason>")
        warning = self.admin.warn_user(target, " ".join(rest), message.sender, level)
        return messages.WARNED_USER.format(
            user=warning.phone,
            level=warning.level.value.replace("_", " "),
            count=len(self.admin.get_warnings(warning.phone)),
        )

    def _cmd_warnings(self, message: InboundMessage, args: List[str]) -> str:
        if not args:
            return self._usage("warnings <user>")
        target = self.admin.normalize(args[0])
        warnings = self.admin.get_warnings(target)
        if not warnings:
            return messages.NO_WARNINGS.format(user=target)
        lines = [f"⚠️ **Warnings for {target}**"]
        for index, w in enumerate(warnings, start=1):
            seen = " ✓" if w.acknowledged else ""
            lines.append(f"{index}. [{w.level.value}] {w.reason} ({w.warned_at:%Y-%m-%d}){seen}")
        return "\n".join(lines)

    def _cmd_addadmin(self, message: InboundMessage, args: List[str]) -> str:
        if len(args) < 2:
            return self._usage("addadmin <user> <role> [name]")
        user = self.admin.add_admin(args[0], args[1].lower(), " ".join(args[2:]), message.sender)
        return messages.ADMIN_ADDED.format(user=user.phone, role=user.role)

    def _cmd_removeadmin(self, message: InboundMessage, args: List[str]) -> str:
        if not args:
            return self._usage("removeadmin <user>")
        user = self.admin.remove_admin(args[0], message.sender)
        return messages.ADMIN_REMOVED.format(user=user.phone)

    def _cmd_setrole(self, message: InboundMessage, args: List[str]) -> str:
        if len(args) < 2:
            return self._usage("setrole <user> <role>")
        user = self.admin.update_admin_role(args[0], args[1].lower(), message.sender)
        return messages.ROLE_UPDATED.format(user=user.phone, role=user.role)

    def _cmd_audit(self, message: InboundMessage, args: List[str]) -> str:
        limit = 10
        if args and args[0].isdigit():
            limit = max(1, min(int(args[0]), 50))
        entries = self.admin.get_audit_logs(limit=limit)
        if not entries:
            return messages.NO_AUDIT_ENTRIES
        lines = ["📜 **Recent admin actions**"]
        for e in entries:
            target = f" → {e.target_user}" if e.target_user else ""
            lines.append(f"• {e.timestamp:%Y-%m-%d %H:%M} {e.action} by {e.performed_by}{target}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # UploadNotifier
    # ------------------------------------------------------------------

    async def queued(self, request: UploadRequest, position: int) -> None:
        await request.origin.reply(
            messages.QUEUED.format(position=position, filename=request.filename)
        )

    async def duplicate(self, request: UploadRequest, record: Optional[DuplicateRecord]) -> None:
        if record is None:
            await request.origin.reply(messages.DUPLICATE_PENDING)
            return
        await request.origin.reply(
            messages.DUPLICATE.format(
                link=record.link,
                date=messages.format_timestamp(record.uploaded_at),
            )
        )

    async def queue_full(self, request: UploadRequest, limit: int) -> None:
        await request.origin.reply(messages.QUEUE_FULL.format(limit=limit))

    async def completed(self, request: UploadRequest, link: str, duration: float) -> None:
        await request.origin.reply(
            messages.COMPLETED.format(
                filename=request.filename,
                link=link,
                duration=messages.format_duration(duration),
            )
        )

    async def failed(self, request: UploadRequest, error: str) -> None:
        await request.origin.reply(
            messages.FAILED.format(filename=request.filename, error=error)
        )

    async def discard(self, request: UploadRequest) -> None:
        await self.staging.discard(request.file_path)
