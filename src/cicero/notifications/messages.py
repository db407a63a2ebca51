"""Chat message texts sent to client groups.

Change texts double as their own idempotency discriminator, so each one names
the counts it moved between and the local date it was seen on.
"""

from datetime import datetime
from typing import Sequence

from cicero.harvest.clients import ContentItem, LinkChange
from cicero.scheduler.change_detector import ChangeDescriptor, PlatformChange, build_change_summary
from cicero.scheduler.scheduler_models import PlatformCounts

CAPTION_PREVIEW_LENGTH = 80
DATE_FORMAT = "%d/%m/%Y"
LINK_PLATFORM_ORDER = ("IG", "FB", "X", "TT", "YT")


def _preview(text: str | None, placeholder: str) -> str:
    if not text:
        return placeholder
    if len(text) > CAPTION_PREVIEW_LENGTH:
        return text[:CAPTION_PREVIEW_LENGTH] + "..."
    return text


def _count_transition(change: PlatformChange) -> str:
    return f"{change.previous} → {change.current}"


def _format_additions(
    header: str,
    platform_label: str,
    change: PlatformChange,
    items: Sequence[ContentItem],
    closing: str,
    seen_at_local: datetime,
) -> str:
    lines = [
        header,
        "",
        f"Terdapat *{change.added}* konten {platform_label} baru yang perlu dikerjakan:",
        "",
    ]

    for index, item in enumerate(items, start=1):
        lines.append(f"{index}. *{item.content_id}*")
        lines.append(f"   Caption: _{_preview(item.caption, '(Tidak ada caption)')}_")
        if item.url:
            lines.append(f"   Link: {item.url}")
        lines.append("")

    if change.added > len(items):
        lines.append(f"_...dan {change.added - len(items)} konten lainnya._")
        lines.append("")

    lines.append(f"Jumlah konten {platform_label}: {_count_transition(change)}")
    lines.append(f"Tanggal: {seen_at_local.strftime(DATE_FORMAT)}")
    lines.append("")
    lines.append(closing)
    return "\n".join(lines)


def format_instagram_additions(
    client_name: str,
    change: PlatformChange,
    items: Sequence[ContentItem],
    seen_at_local: datetime,
) -> str:
    if change.added <= 0:
        return ""
    return _format_additions(
        f"📸 *Tugas Instagram Baru - {client_name}*",
        "Instagram",
        change,
        items,
        "_Silakan like dan beri komentar pada konten di atas._",
        seen_at_local,
    )


def format_tiktok_additions(
    client_name: str,
    change: PlatformChange,
    items: Sequence[ContentItem],
    seen_at_local: datetime,
) -> str:
    if change.added <= 0:
        return ""
    return _format_additions(
        f"🎵 *Tugas TikTok Baru - {client_name}*",
        "TikTok",
        change,
        items,
        "_Silakan beri komentar pada video di atas._",
        seen_at_local,
    )


def _deletion_lines(icon: str, platform_label: str, change: PlatformChange) -> list[str]:
    lines = [
        f"{icon} *{change.deleted}* konten {platform_label} telah dihapus dari daftar tugas "
        f"({_count_transition(change)})."
    ]
    if change.missing_ids:
        lines.append(f"   ID: {', '.join(change.missing_ids)}")
    return lines


def format_deletions(
    client_name: str,
    instagram: PlatformChange,
    tiktok: PlatformChange,
    seen_at_local: datetime,
) -> str:
    if instagram.deleted <= 0 and tiktok.deleted <= 0:
        return ""

    lines = [f"🗑️ *Perubahan Tugas - {client_name}*", ""]
    if instagram.deleted > 0:
        lines.extend(_deletion_lines("📸", "Instagram", instagram))
    if tiktok.deleted > 0:
        lines.extend(_deletion_lines("🎵", "TikTok", tiktok))
    lines.append("")
    lines.append(f"Tanggal: {seen_at_local.strftime(DATE_FORMAT)}")
    lines.append("_Tugas yang dihapus tidak perlu dikerjakan lagi._")
    return "\n".join(lines)


def _format_links(links: dict[str, str]) -> str:
    ordered = [label for label in LINK_PLATFORM_ORDER if links.get(label)]
    ordered += sorted(label for label in links if label not in LINK_PLATFORM_ORDER and links[label])
    return ", ".join(f"{label}: {links[label]}" for label in ordered)


def format_link_changes(client_name: str, link_changes: Sequence[LinkChange]) -> str:
    if not link_changes:
        return ""

    lines = [
        f"🔗 *Perubahan Link Tugas - {client_name}*",
        "",
        f"Terdapat *{len(link_changes)}* perubahan link amplifikasi:",
        "",
    ]

    for index, change in enumerate(link_changes, start=1):
        lines.append(f"{index}. *{change.reporter_name or 'User'}*")
        lines.append(f"   Post: {change.content_id}")
        links = _format_links(change.links)
        if links:
            lines.append(f"   Link: {links}")
        lines.append("")

    lines.append("_Link amplifikasi telah diperbarui._")
    return "\n".join(lines)


def format_scheduled_recap(
    client_name: str,
    counts: PlatformCounts,
    changes: ChangeDescriptor,
    fetched_at_local: datetime,
) -> str:
    return "\n".join(
        [
            f"⏰ *Rekap Tugas Terjadwal - {client_name}*",
            "",
            f"Waktu pengambilan: {fetched_at_local.strftime('%d/%m/%Y %H:%M')}",
            f"📸 Konten Instagram aktif: *{counts.instagram}*",
            f"🎵 Konten TikTok aktif: *{counts.tiktok}*",
            f"Perubahan: {build_change_summary(changes)}",
            "",
            "_Pastikan semua tugas hari ini sudah dikerjakan._",
        ]
    )
