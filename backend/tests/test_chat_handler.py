"""Tests for chat ingestion (ChatHandler, StagingArea, reply formatting).

Covers:
* Text handling     – greetings, commands, aliases, unknown commands
* Media filtering   – blocked / unsupported / oversized media, group chats
* Submission        – staging and queue submission, error replies
* Admin commands    – permission checks, restrictions, warnings, audit
* Notifier replies  – queued / duplicate / completed / failed / discard
* End-to-end        – real UploadQueue + LocalStorage
"""
import os
import threading
import time
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from relay.admin import AdminService
from relay.chat import messages
from relay.chat.handler import ChatHandler, build_filename
from relay.chat.schemas import InboundMessage, MediaPayload
from relay.chat.staging import StagingArea
from relay.config import AppSettings
from relay.storage.local import LocalStorage
from relay.uploads.queue import UploadQueue
from relay.uploads.schemas import DuplicateRecord, SubmitOutcome, SubmitResult, UploadRequest


class FakeMessage(InboundMessage):
    """In-memory InboundMessage recording replies."""

    def __init__(self, sender="alice@c.us", body="", media: Optional[MediaPayload] = None,
                 is_private=True, fail_download=False):
        super().__init__(sender, body=body, has_media=media is not None or fail_download,
                         is_private=is_private, message_id="msg-1")
        self.media = media
        self.fail_download = fail_download
        self.replies: List[str] = []

    async def download_media(self) -> Optional[MediaPayload]:
        if self.fail_download:
            raise ConnectionError("media download failed")
        return self.media

    async def reply(self, text: str) -> None:
        self.replies.append(text)


def pdf(data: bytes = b"%PDF-1.4", filename: Optional[str] = "report.pdf") -> MediaPayload:
    return MediaPayload(data=data, mimetype="application/pdf", filename=filename)


@pytest.fixture
def settings():
    cfg = AppSettings()
    cfg.bot.max_file_size = 1024
    return cfg


@pytest.fixture
def staging(tmp_path):
    return StagingArea(tmp_path / "temp")


@pytest.fixture
def queue_mock():
    queue = MagicMock()
    queue.submit = AsyncMock(return_value=SubmitResult(outcome=SubmitOutcome.QUEUED, item_id="i", position=1))
    return queue


@pytest.fixture
def handler(settings, staging, queue_mock):
    return ChatHandler(settings, staging, queue=queue_mock)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


class TestTextHandling:
    @pytest.mark.asyncio
    async def test_ping(self, handler):
        msg = FakeMessage(body=".ping")
        await handler.handle(msg)
        assert msg.replies == ["pong"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [".p", ".PING", "  .ping  "])
    async def test_ping_variants(self, handler, body):
        msg = FakeMessage(body=body)
        await handler.handle(msg)
        assert msg.replies == ["pong"]

    @pytest.mark.asyncio
    async def test_greeting_gets_welcome(self, handler, settings):
        msg = FakeMessage(body="Hello")
        await handler.handle(msg)
        assert msg.replies == [messages.welcome_text(settings.bot.name)]

    @pytest.mark.asyncio
    async def test_help_alias(self, handler, settings):
        msg = FakeMessage(body=".h")
        await handler.handle(msg)
        assert msg.replies == [messages.help_text(settings.bot.name, ".")]

    @pytest.mark.asyncio
    async def test_unknown_command(self, handler):
        msg = FakeMessage(body=".dance")
        await handler.handle(msg)
        assert msg.replies == [messages.UNKNOWN_COMMAND.format(prefix=".")]

    @pytest.mark.asyncio
    async def test_plain_text_ignored(self, handler):
        msg = FakeMessage(body="just chatting")
        await handler.handle(msg)
        assert msg.replies == []

    @pytest.mark.asyncio
    async def test_group_messages_ignored(self, handler):
        msg = FakeMessage(body=".ping", is_private=False)
        await handler.handle(msg)
        assert msg.replies == []

    @pytest.mark.asyncio
    async def test_health_without_monitor(self, handler):
        msg = FakeMessage(body=".health")
        await handler.handle(msg)
        assert msg.replies == [messages.HEALTH_DISABLED]

    @pytest.mark.asyncio
    async def test_status_and_stats_use_queue(self, settings, staging, tmp_path):
        queue = UploadQueue(LocalStorage(str(tmp_path / "store")), MagicMock())
        handler = ChatHandler(settings, staging, queue=queue)

        status = FakeMessage(body=".status")
        stats = FakeMessage(body=".stat")
        await handler.handle(status)
        await handler.handle(stats)

        assert "Completed: 0" in status.replies[0]
        assert "Success rate: n/a" in stats.replies[0]

    @pytest.mark.asyncio
    async def test_commands_without_queue(self, settings, staging):
        handler = ChatHandler(settings, staging)
        msg = FakeMessage(body=".queue")
        await handler.handle(msg)
        assert "not running" in msg.replies[0]


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


class TestMediaHandling:
    @pytest.mark.asyncio
    async def test_supported_media_is_staged_and_submitted(self, handler, queue_mock, staging):
        msg = FakeMessage(media=pdf())
        await handler.handle(msg)

        queue_mock.submit.assert_awaited_once()
        request = queue_mock.submit.await_args.args[0]
        assert request.user_id == "alice@c.us"
        assert request.filename == "report.pdf"
        assert request.mime_type == "application/pdf"
        assert request.message_id == "msg-1"
        assert request.origin is msg
        assert os.path.dirname(request.file_path) == str(staging.temp_dir)
        with open(request.file_path, "rb") as fh:
            assert fh.read() == b"%PDF-1.4"

    @pytest.mark.asyncio
    async def test_blocked_type_silently_ignored(self, handler, queue_mock):
        msg = FakeMessage(media=MediaPayload(data=b"webp", mimetype="image/webp"))
        await handler.handle(msg)
        assert msg.replies == []
        queue_mock.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_type(self, handler, queue_mock):
        msg = FakeMessage(media=MediaPayload(data=b"zip", mimetype="application/zip"))
        await handler.handle(msg)
        assert msg.replies == [messages.UNSUPPORTED_TYPE]
        queue_mock.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_oversized_file(self, handler, queue_mock):
        msg = FakeMessage(media=pdf(data=b"x" * 2048))
        await handler.handle(msg)
        assert msg.replies == [messages.FILE_TOO_LARGE.format(max_size="1 KB")]
        queue_mock.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restricted_user(self, settings, staging, queue_mock):
        handler = ChatHandler(settings, staging, queue=queue_mock,
                              is_restricted=lambda user: user == "alice@c.us")
        msg = FakeMessage(media=pdf())
        await handler.handle(msg)
        assert msg.replies == [messages.RESTRICTED]
        queue_mock.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_download_failure_replies_error(self, handler, queue_mock):
        msg = FakeMessage(fail_download=True)
        await handler.handle(msg)
        assert msg.replies == [messages.PROCESSING_ERROR]

    @pytest.mark.asyncio
    async def test_submit_failure_discards_staged_file(self, handler, queue_mock, staging):
        queue_mock.submit.side_effect = RuntimeError("queue exploded")
        msg = FakeMessage(media=pdf())
        await handler.handle(msg)
        assert msg.replies == [messages.PROCESSING_ERROR]
        assert list(staging.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_mimetype_parameters_stripped(self, handler, queue_mock):
        msg = FakeMessage(media=MediaPayload(data=b"a,b", mimetype="text/csv; charset=utf-8",
                                             filename="data.csv"))
        await handler.handle(msg)
        request = queue_mock.submit.await_args.args[0]
        assert request.mime_type == "text/csv"


class TestBuildFilename:
    def test_keeps_stem_and_uses_mime_extension(self):
        assert build_filename(pdf(filename="Quarterly Report.PDF"), "application/pdf") == "Quarterly Report.pdf"

    def test_strips_directories(self):
        assert build_filename(pdf(filename="C:\\Users\\me\\scan.pdf"), "application/pdf") == "scan.pdf"

    def test_generated_name_when_missing(self):
        assert build_filename(pdf(filename=None), "application/pdf", now=1.5) == "media_1500.pdf"

    def test_unknown_mime_falls_back_to_bin(self):
        media = MediaPayload(data=b"x", mimetype="application/x-relay-unknown", filename="blob")
        assert build_filename(media, "application/x-relay-unknown") == "blob.bin"


# ---------------------------------------------------------------------------
# Admin commands
# ---------------------------------------------------------------------------

OWNER = "919876543210@c.us"
TARGET = "15551234567@c.us"


@pytest.fixture
def admin(tmp_path):
    service = AdminService(str(tmp_path / "admin.duckdb"), default_admin=OWNER)
    yield service
    service.close()


@pytest.fixture
def admin_handler(settings, staging, queue_mock, admin):
    return ChatHandler(settings, staging, queue=queue_mock, admin=admin)


async def _say(handler: ChatHandler, body: str, sender: str = OWNER) -> List[str]:
    msg = FakeMessage(sender=sender, body=body)
    await handler.handle(msg)
    return msg.replies


class TestAdminCommands:
    @pytest.mark.asyncio
    async def test_restrict_blocks_media_until_lifted(self, admin_handler, queue_mock, admin):
        replies = await _say(admin_handler, ".restrict 15551234567 24h Spamming the bot")
        assert replies == [messages.RESTRICTED_USER.format(
            user=TARGET, duration="for 24h", reason="Spamming the bot")]
        assert admin.get_restriction(TARGET).reason == "Spamming the bot"

        msg = FakeMessage(sender=TARGET, media=pdf())
        await admin_handler.handle(msg)
        assert msg.replies == [messages.RESTRICTED]
        queue_mock.submit.assert_not_awaited()

        assert await _say(admin_handler, ".unrestrict 15551234567") == [
            messages.UNRESTRICTED_USER.format(user=TARGET)]
        await admin_handler.handle(FakeMessage(sender=TARGET, media=pdf()))
        queue_mock.submit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_permanent_restriction_without_hours(self, admin_handler, admin):
        await _say(admin_handler, ".restrict 15551234567 abuse")
        restriction = admin.get_restriction(TARGET)
        assert restriction.duration_hours is None
        assert restriction.reason == "abuse"
        listing = await _say(admin_handler, ".restricted")
        assert TARGET in listing[0]
        assert "permanently" in listing[0]

    @pytest.mark.asyncio
    async def test_non_admin_refused(self, admin_handler, admin):
        assert await _say(admin_handler, ".restrict 15550000000", sender=TARGET) == [messages.NOT_ADMIN]
        assert admin.get_restriction("15550000000") is None

    @pytest.mark.asyncio
    async def test_missing_permission_named(self, admin_handler, admin):
        admin.add_admin(TARGET, "moderator", "Mo", OWNER)
        replies = await _say(admin_handler, ".restrict 15550000000", sender=TARGET)
        assert replies == [messages.INSUFFICIENT_PERMISSIONS.format(permissions="user_restriction")]

        replies = await _say(admin_handler, ".warn 15550000000 final stop that", sender=TARGET)
        assert "final warning" in replies[0]
        assert admin.get_warnings("15550000000")[0].reason == "stop that"

    @pytest.mark.asyncio
    async def test_usage_and_service_errors(self, admin_handler):
        assert await _say(admin_handler, ".warn 15551234567") == [
            messages.ADMIN_USAGE.format(usage=".warn <user> [final|last] <reason>")]
        assert await _say(admin_handler, ".removeadmin 919876543210") == [
            messages.ADMIN_ERROR.format(error="Cannot remove super admin")]

    @pytest.mark.asyncio
    async def test_admin_management_and_audit(self, admin_handler, admin):
        assert await _say(admin_handler, ".addadmin 15551234567 Viewer Val") == [
            messages.ADMIN_ADDED.format(user=TARGET, role="viewer")]
        assert await _say(admin_handler, ".setrole 15551234567 admin") == [
            messages.ROLE_UPDATED.format(user=TARGET, role="admin")]
        assert admin.get_admin(TARGET).name == "Val"

        audit = (await _say(admin_handler, ".audit 5"))[0]
        assert "admin_role_updated" in audit
        assert "admin_added" in audit

    @pytest.mark.asyncio
    async def test_warnings_listing(self, admin_handler):
        assert await _say(admin_handler, ".warnings 15551234567") == [
            messages.NO_WARNINGS.format(user=TARGET)]
        await _say(admin_handler, ".warn 15551234567 please stop")
        listing = (await _say(admin_handler, ".warnings 15551234567"))[0]
        assert "1. [warning] please stop" in listing

    @pytest.mark.asyncio
    async def test_admin_overview(self, admin_handler):
        overview = (await _say(admin_handler, ".admin"))[0]
        assert "Role: super_admin" in overview
        assert "audit_logs" in overview

    @pytest.mark.asyncio
    async def test_disabled_without_store(self, handler):
        assert await _say(handler, ".audit") == [messages.ADMIN_DISABLED]


# ---------------------------------------------------------------------------
# Notifier replies
# ---------------------------------------------------------------------------


class TestNotifierReplies:
    def _request(self, msg, path="/tmp/none"):
        return UploadRequest(user_id=msg.sender, file_path=path, mime_type="application/pdf",
                             filename="report.pdf", origin=msg)

    @pytest.mark.asyncio
    async def test_queued(self, handler):
        msg = FakeMessage()
        await handler.queued(self._request(msg), 3)
        assert msg.replies == [messages.QUEUED.format(position=3, filename="report.pdf")]

    @pytest.mark.asyncio
    async def test_duplicate_with_record(self, handler):
        msg = FakeMessage()
        record = DuplicateRecord(link="https://l/1", uploaded_at=0.0, filename="report.pdf")
        await handler.duplicate(self._request(msg), record)
        assert "https://l/1" in msg.replies[0]

    @pytest.mark.asyncio
    async def test_duplicate_in_flight(self, handler):
        msg = FakeMessage()
        await handler.duplicate(self._request(msg), None)
        assert msg.replies == [messages.DUPLICATE_PENDING]

    @pytest.mark.asyncio
    async def test_completed(self, handler):
        msg = FakeMessage()
        await handler.completed(self._request(msg), "https://l/1", 65.0)
        assert "https://l/1" in msg.replies[0]
        assert "1m 5s" in msg.replies[0]

    @pytest.mark.asyncio
    async def test_failed_and_queue_full(self, handler):
        msg = FakeMessage()
        await handler.failed(self._request(msg), "Drive quota exceeded")
        await handler.queue_full(self._request(msg), 50)
        assert "Drive quota exceeded" in msg.replies[0]
        assert "50" in msg.replies[1]

    @pytest.mark.asyncio
    async def test_discard_deletes_staged_file(self, handler, staging):
        path = await staging.stage(b"data", "a.pdf")
        await handler.discard(self._request(FakeMessage(), str(path)))
        assert not path.exists()


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


class TestStagingArea:
    @pytest.mark.asyncio
    async def test_stage_uses_unique_names(self, staging):
        first = await staging.stage(b"a", "same.pdf")
        second = await staging.stage(b"b", "same.pdf")
        assert first != second
        assert first.name.endswith("_same.pdf")

    @pytest.mark.asyncio
    async def test_discard_missing_file(self, staging, tmp_path):
        assert await staging.discard(tmp_path / "missing") is False

    def test_sweep_removes_only_stale_files(self, staging):
        old = staging.temp_dir / "old.pdf"
        fresh = staging.temp_dir / "fresh.pdf"
        old.write_bytes(b"o")
        fresh.write_bytes(b"f")
        now = time.time()
        os.utime(old, (now - 7200, now - 7200))

        assert staging.sweep(now=now) == 1
        assert not old.exists()
        assert fresh.exists()

    @pytest.mark.asyncio
    async def test_sweep_async_runs_off_the_event_loop(self, staging, monkeypatch):
        old = staging.temp_dir / "old.pdf"
        old.write_bytes(b"o")
        now = time.time()
        os.utime(old, (now - 7200, now - 7200))
        threads = []
        sweep = staging.sweep

        def recording_sweep(now=None):
            threads.append(threading.get_ident())
            return sweep(now)

        monkeypatch.setattr(staging, "sweep", recording_sweep)

        assert await staging.sweep_async(now=now) == 1
        assert not old.exists()
        assert threads and threads[0] != threading.get_ident()


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_media_upload_then_duplicate(self, settings, staging, tmp_path):
        storage = LocalStorage(str(tmp_path / "store"), public_base_url="http://relay")
        handler = ChatHandler(settings, staging)
        queue = UploadQueue(storage, handler)
        handler.bind(queue)

        first = FakeMessage(media=pdf())
        await handler.handle(first)
        await queue.join()

        assert first.replies[0].startswith("📁 File queued for upload")
        assert first.replies[1].startswith("✅ Upload completed!")
        assert "http://relay/files/" in first.replies[1]
        assert list(staging.temp_dir.iterdir()) == []

        second = FakeMessage(media=pdf(filename="copy.pdf"))
        await handler.handle(second)
        await queue.join()

        assert len(second.replies) == 1
        assert second.replies[0].startswith("⚠️ This file appears to be a duplicate!")
        assert list(staging.temp_dir.iterdir()) == []
        assert queue.get_user_status("alice@c.us").completed == 1
