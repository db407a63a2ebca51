"""Count-delta change detection between two fetch runs.

Everything here is pure: given previous and current counts (plus the optional
item lists and link reports the content collaborator supplied) it returns a
``ChangeDescriptor``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from cicero.scheduler.scheduler_models import PlatformCounts


class DeletionClassification(str, Enum):
    NONE = "none"
    UNKNOWN = "unknown"
    REAL_MISSING = "real_missing"
    SYNC_ANOMALY = "sync_anomaly"


@dataclass(frozen=True)
class PlatformChange:
    previous: int
    current: int
    added: int = 0
    deleted: int = 0
    added_items: tuple[Any, ...] = ()
    missing_ids: tuple[str, ...] = ()
    deletion_ratio: float = 0.0
    classification: DeletionClassification = DeletionClassification.NONE

    @property
    def diff(self) -> int:
        return self.current - self.previous

    @property
    def has_changes(self) -> bool:
        return self.added > 0 or self.deleted > 0


@dataclass(frozen=True)
class ChangeDescriptor:
    instagram: PlatformChange
    tiktok: PlatformChange
    previous_counts: PlatformCounts = field(default_factory=PlatformCounts)
    current_counts: PlatformCounts = field(default_factory=PlatformCounts)
    link_changes: tuple[Any, ...] = ()

    @property
    def has_changes(self) -> bool:
        return self.instagram.has_changes or self.tiktok.has_changes or bool(self.link_changes)

    @property
    def ig_added(self) -> int:
        return self.instagram.added

    @property
    def ig_deleted(self) -> int:
        return self.instagram.deleted

    @property
    def tiktok_added(self) -> int:
        return self.tiktok.added

    @property
    def tiktok_deleted(self) -> int:
        return self.tiktok.deleted


def classify_deletion(
    deleted: int,
    previous: int,
    missing_ids: Sequence[str],
    absolute_threshold: int = 5,
    ratio_threshold: float = 0.5,
) -> tuple[DeletionClassification, float]:
    """Label a deletion burst.

    Returns the classification and the deletion ratio. Without a missing-id
    shortlist nothing can be said about the burst, so it is ``unknown``.
    """
    if deleted <= 0:
        return DeletionClassification.NONE, 0.0

    ratio = deleted / previous if previous > 0 else 1.0

    if not missing_ids:
        return DeletionClassification.UNKNOWN, ratio

    if deleted >= absolute_threshold or ratio >= ratio_threshold:
        return DeletionClassification.SYNC_ANOMALY, ratio

    return DeletionClassification.REAL_MISSING, ratio


def detect_platform_change(
    previous: int,
    current: int,
    *,
    added_items: Optional[Sequence[Any]] = None,
    missing_ids: Optional[Sequence[str]] = None,
    absolute_threshold: int = 5,
    ratio_threshold: float = 0.5,
) -> PlatformChange:
    diff = current - previous

    if diff > 0:
        items = tuple((added_items or ())[:diff])
        return PlatformChange(previous=previous, current=current, added=diff, added_items=items)

    if diff < 0:
        deleted = -diff
        shortlist = tuple(missing_ids or ())
        classification, ratio = classify_deletion(
            deleted,
            previous,
            shortlist,
            absolute_threshold=absolute_threshold,
            ratio_threshold=ratio_threshold,
        )
        return PlatformChange(
            previous=previous,
            current=current,
            deleted=deleted,
            missing_ids=shortlist,
            deletion_ratio=ratio,
            classification=classification,
        )

    return PlatformChange(previous=previous, current=current)


def detect_changes(
    previous: PlatformCounts,
    current: PlatformCounts,
    *,
    ig_added_items: Optional[Sequence[Any]] = None,
    tiktok_added_items: Optional[Sequence[Any]] = None,
    ig_missing_ids: Optional[Sequence[str]] = None,
    tiktok_missing_ids: Optional[Sequence[str]] = None,
    link_changes: Optional[Sequence[Any]] = None,
    absolute_threshold: int = 5,
    ratio_threshold: float = 0.5,
) -> ChangeDescriptor:
    return ChangeDescriptor(
        instagram=detect_platform_change(
            previous.instagram,
            current.instagram,
            added_items=ig_added_items,
            missing_ids=ig_missing_ids,
            absolute_threshold=absolute_threshold,
            ratio_threshold=ratio_threshold,
        ),
        tiktok=detect_platform_change(
            previous.tiktok,
            current.tiktok,
            added_items=tiktok_added_items,
            missing_ids=tiktok_missing_ids,
            absolute_threshold=absolute_threshold,
            ratio_threshold=ratio_threshold,
        ),
        previous_counts=previous,
        current_counts=current,
        link_changes=tuple(link_changes or ()),
    )


def build_change_summary(changes: ChangeDescriptor) -> str:
    parts = []
    if changes.ig_added > 0:
        parts.append(f"+{changes.ig_added} IG posts")
    if changes.tiktok_added > 0:
        parts.append(f"+{changes.tiktok_added} TikTok posts")
    if changes.ig_deleted > 0:
        parts.append(f"-{changes.ig_deleted} IG posts")
    if changes.tiktok_deleted > 0:
        parts.append(f"-{changes.tiktok_deleted} TikTok posts")
    if changes.link_changes:
        parts.append(f"~{len(changes.link_changes)} link changes")

    return ", ".join(parts) if parts else "no changes"
