from __future__ import annotations

from voiptap.services.sequence_index import ANALYSIS_TYPE_VOIP, SequenceIndex


def test_append_keeps_capture_order_and_defaults_visible() -> None:
    index = SequenceIndex()
    index.append(0, 1, rel_ts=0.0, frame_label="INVITE SDP")
    index.append(1, 2)
    index.append(0, 4)

    assert index.analysis_type == ANALYSIS_TYPE_VOIP
    assert [(item.conv_id, item.frame_number) for item in index] == [(0, 1), (1, 2), (0, 4)]
    assert all(item.display for item in index)


def test_sort_stable_orders_late_events_and_is_idempotent() -> None:
    index = SequenceIndex()
    index.append(0, 5, frame_label="first-5")
    index.append(1, 2)
    index.append(2, 5, frame_label="second-5")
    index.append(3, 1)

    index.sort_stable()
    once = [(item.frame_number, item.frame_label) for item in index]
    index.sort_stable()
    twice = [(item.frame_number, item.frame_label) for item in index]

    assert once == twice
    assert [frame for frame, _ in once] == [1, 2, 5, 5]
    assert [label for frame, label in once if frame == 5] == ["first-5", "second-5"]


def test_set_visibility_tags_without_removing() -> None:
    index = SequenceIndex()
    for frame, conv in enumerate([0, 1, 2, 1, 0, 3], start=1):
        index.append(conv, frame)

    shown = index.set_visibility(lambda conv_id: conv_id in {1, 3})

    assert shown == 3
    assert len(index) == 6
    assert [item.frame_number for item in index.visible()] == [2, 4, 6]

    index.set_visibility(lambda conv_id: True)
    assert len(index.visible()) == 6
