from cicero.harvest.clients import ContentItem
from cicero.scheduler.change_detector import (
    DeletionClassification,
    build_change_summary,
    classify_deletion,
    detect_changes,
)
from cicero.scheduler.scheduler_models import PlatformCounts


def test_additions_on_instagram_only():
    changes = detect_changes(
        PlatformCounts(instagram=5, tiktok=3),
        PlatformCounts(instagram=7, tiktok=3),
    )

    assert changes.ig_added == 2
    assert changes.tiktok_added == 0
    assert changes.ig_deleted == 0
    assert changes.tiktok_deleted == 0
    assert changes.has_changes is True


def test_added_items_are_capped_to_the_count_delta():
    items = [ContentItem(content_id=f"post-{i}") for i in range(5)]

    changes = detect_changes(
        PlatformCounts(instagram=5),
        PlatformCounts(instagram=7),
        ig_added_items=items,
    )

    assert [item.content_id for item in changes.instagram.added_items] == ["post-0", "post-1"]


def test_large_relative_deletion_is_sync_anomaly():
    changes = detect_changes(
        PlatformCounts(instagram=10, tiktok=0),
        PlatformCounts(instagram=4, tiktok=0),
        ig_missing_ids=["a", "b", "c", "d", "e", "f"],
    )

    assert changes.ig_deleted == 6
    assert changes.instagram.deletion_ratio == 0.6
    assert changes.instagram.classification == DeletionClassification.SYNC_ANOMALY
    assert changes.has_changes is True


def test_small_deletion_is_real_missing():
    changes = detect_changes(
        PlatformCounts(instagram=20),
        PlatformCounts(instagram=19),
        ig_missing_ids=["abc"],
    )

    assert changes.ig_deleted == 1
    assert changes.instagram.classification == DeletionClassification.REAL_MISSING


def test_deletion_without_missing_ids_is_unknown():
    classification, ratio = classify_deletion(8, 10, missing_ids=[])

    assert classification == DeletionClassification.UNKNOWN
    assert ratio == 0.8


def test_absolute_threshold_flags_anomaly_even_with_low_ratio():
    classification, ratio = classify_deletion(5, 100, missing_ids=["x"])

    assert classification == DeletionClassification.SYNC_ANOMALY
    assert ratio == 0.05


def test_deletion_from_zero_previous_uses_ratio_one():
    classification, ratio = classify_deletion(1, 0, missing_ids=["x"])

    assert ratio == 1.0
    assert classification == DeletionClassification.SYNC_ANOMALY


def test_deletion_never_suppresses_the_count_delta():
    changes = detect_changes(
        PlatformCounts(tiktok=10),
        PlatformCounts(tiktok=0),
        tiktok_missing_ids=["1"],
    )

    assert changes.tiktok.classification == DeletionClassification.SYNC_ANOMALY
    assert changes.tiktok_deleted == 10


def test_no_changes():
    counts = PlatformCounts(instagram=3, tiktok=4)

    changes = detect_changes(counts, counts)

    assert changes.has_changes is False
    assert changes.instagram.classification == DeletionClassification.NONE
    assert build_change_summary(changes) == "no changes"


def test_change_summary_lists_additions_then_deletions():
    changes = detect_changes(
        PlatformCounts(instagram=5, tiktok=6),
        PlatformCounts(instagram=7, tiktok=4),
    )

    assert build_change_summary(changes) == "+2 IG posts, -2 TikTok posts"


def test_link_changes_alone_are_a_change():
    counts = PlatformCounts(instagram=3, tiktok=4)

    changes = detect_changes(counts, counts, link_changes=["report-1", "report-2"])

    assert changes.has_changes is True
    assert build_change_summary(changes) == "~2 link changes"


def test_link_changes_come_last_in_the_summary():
    changes = detect_changes(
        PlatformCounts(instagram=1),
        PlatformCounts(instagram=2),
        link_changes=["report-1"],
    )

    assert build_change_summary(changes) == "+1 IG posts, ~1 link changes"
