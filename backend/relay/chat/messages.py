"""Reply texts sent back to chat users."""
from datetime import datetime


def welcome_text(bot_name: str) -> str:
    return "\n".join([
        f"🤖 **{bot_name}**",
        "",
        "I can upload your media to Google Drive and send you a shareable link.",
        "",
        "Type `.help` for more information.",
    ])


def help_text(bot_name: str, prefix: str = ".") -> str:
    return "\n".join([
        f"🤖 **{bot_name}**",
        "",
        "I can upload your media to Google Drive and send you a public link.",
        "",
        "📤 **Supported Media**:",
        "• Images (JPG, PNG, GIF, etc.)",
        "• Videos (MP4, AVI, MOV, etc.)",
        "• Documents (PDF, DOC, TXT, etc.)",
        "• Audio files (MP3, WAV, etc.)",
        "",
        "❌ **Not Supported**:",
        "• Stickers",
        "• Contact cards",
        "• Location data",
        "",
        "💬 **Commands**:",
        f"• `{prefix}ping` – Check if I am online",
        f"• `{prefix}help` – Show this help",
        f"• `{prefix}status` – Your upload status",
        f"• `{prefix}queue` – Current upload queue",
        f"• `{prefix}health` – Bot health report",
        f"• `{prefix}stats` – Upload statistics",
        f"• `{prefix}admin` – Admin commands (admins only)",
        "",
        "📁 **How it works**:",
        "1. Send me any supported media file",
        "2. I'll add it to the upload queue",
        "3. Upload to Google Drive automatically",
        "4. Get a shareable link when done!",
        "",
        "⚠️ **Note**: Duplicate files are automatically detected and won't be uploaded again.",
    ])


UNSUPPORTED_TYPE = "❌ This file type is not supported for upload."
FILE_TOO_LARGE = "❌ File is too large. Maximum size is {max_size}."
PROCESSING_ERROR = "❌ Error processing your file. Please try again."
RESTRICTED = "🚫 You are currently restricted from uploading files."
UNKNOWN_COMMAND = "❓ Unknown command. Type `{prefix}help` to see what I can do."
HEALTH_DISABLED = "ℹ️ Health monitoring is not enabled."

QUEUED = "📁 File queued for upload\nPosition: {position}\nFilename: {filename}"
COMPLETED = "✅ Upload completed!\n\n📁 File: {filename}\n🔗 Link: {link}\n⏱️ Time: {duration}"
DUPLICATE = "⚠️ This file appears to be a duplicate!\n\nOriginal upload: {link}\nUploaded: {date}"
DUPLICATE_PENDING = "⚠️ This file appears to be a duplicate!\n\nThe same file is already in the upload queue."
FAILED = "❌ Upload failed!\n\n📁 File: {filename}\n⚠️ Error: {error}\n🔄 Please try again later."
QUEUE_FULL = "⏳ The upload queue is full ({limit} files waiting). Please try again later."


def format_duration(seconds: float) -> str:
    """Render an elapsed time as ``42s`` or ``3m 5s``."""
    total = int(max(seconds, 0))
    if total < 60:
        return f"{total}s"
    minutes, remaining = divmod(total, 60)
    return f"{minutes}m {remaining}s"


def format_bytes(size: float) -> str:
    """Render a byte count as ``0 B``, ``1.5 KB``, ``100 MB``..."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def format_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Admin replies
# ---------------------------------------------------------------------------

ADMIN_DISABLED = "ℹ️ Admin commands are not enabled."
NOT_ADMIN = "⛔ This command is for admins only."
INSUFFICIENT_PERMISSIONS = "⛔ You need the {permissions} permission for this command."
ADMIN_ERROR = "❌ {error}"
ADMIN_USAGE = "Usage: `{usage}`"

RESTRICTED_USER = "🚫 {user} is restricted {duration}.\nReason: {reason}"
UNRESTRICTED_USER = "✅ {user} can upload again."
NO_RESTRICTIONS = "✅ Nobody is restricted."
WARNED_USER = "⚠️ {user} warned ({level}). They now have {count} warning(s)."
NO_WARNINGS = "✅ {user} has no warnings."
ADMIN_ADDED = "✅ {user} is now {role}."
ADMIN_REMOVED = "✅ {user} is no longer an admin."
ROLE_UPDATED = "✅ {user} is now {role}."
NO_AUDIT_ENTRIES = "📜 The audit log is empty."


def admin_help_text(role: str, permissions, prefix: str = ".") -> str:
    granted = ", ".join(p.value for p in permissions) or "none"
    return "\n".join([
        "🛡️ **Admin**",
        f"Role: {role}",
        f"Permissions: {granted}",
        "",
        "💬 **Admin commands**:",
        f"• `{prefix}restrict <user> [hours] [reason]` – Block uploads",
        f"• `{prefix}unrestrict <user>` – Lift a restriction",
        f"• `{prefix}restricted` – List restricted users",
        f"• `{prefix}warn <user> [final|last] <reason>` – Warn a user",
        f"• `{prefix}warnings <user>` – Show a user's warnings",
        f"• `{prefix}addadmin <user> <role> [name]` – Add an admin",
        f"• `{prefix}removeadmin <user>` – Remove an admin",
        f"• `{prefix}setrole <user> <role>` – Change an admin's role",
        f"• `{prefix}audit [count]` – Recent admin actions",
    ])


def format_restriction_duration(hours) -> str:
    if hours is None:
        return "permanently"
    return f"for {hours:g}h"
