from __future__ import annotations

import warnings

import pytest

from voiptap.errors import InconsistentReferenceWarning
from voiptap.services.call_store import (
    CallRecordStore,
    ClassificationEvent,
    H248Info,
    H323Info,
    IsupInfo,
    SipInfo,
    VoipProtocol,
)
from voiptap.services.filter_compiler import (
    build_filter,
    compile_filter,
    compile_protocol_filter,
    compile_sequence_selection,
)
from voiptap.services.sequence_index import SequenceIndex


def _index(pairs) -> SequenceIndex:
    index = SequenceIndex()
    for conv_id, frame in pairs:
        index.append(conv_id, frame)
    return index


MIXED = [(1, 1), (0, 2), (0, 3), (2, 4), (1, 5), (0, 7), (2, 8), (0, 9)]


def test_empty_selection_yields_empty_filter() -> None:
    assert compile_filter(set(), _index(MIXED)) == ""


def test_frames_of_selected_call_in_index_order() -> None:
    assert compile_filter({0}, _index(MIXED)) == "frame.number == 2 or frame.number == 3 or frame.number == 7 or frame.number == 9"


def test_exact_three_frame_filter() -> None:
    index = _index([(5, 1), (4, 3), (5, 4), (4, 7), (6, 8), (4, 9)])
    assert compile_filter({4}, index) == "frame.number == 3 or frame.number == 7 or frame.number == 9"


def test_output_follows_index_order_not_selection_order() -> None:
    index = _index(MIXED)
    assert compile_filter([2, 1], index) == compile_filter([1, 2], index)
    assert compile_filter([2, 1], index) == (
        "frame.number == 1 or frame.number == 4 or frame.number == 5 or frame.number == 8"
    )


def test_selection_without_events_is_empty() -> None:
    assert compile_filter({42}, _index(MIXED)) == ""


def test_events_of_unknown_calls_are_excluded() -> None:
    store = CallRecordStore()
    store.upsert(ClassificationEvent(protocol=VoipProtocol.SIP, frame_number=1, rel_ts=0.0))
    index = _index([(0, 1), (3, 2), (0, 3), (3, 4)])

    with pytest.warns(InconsistentReferenceWarning):
        result = compile_filter({0, 3}, index, store)

    assert result == "frame.number == 1 or frame.number == 3"


def test_sequence_selection_tags_visibility_of_two_calls() -> None:
    index = _index(MIXED)
    handoff = compile_sequence_selection({0, 2}, index)

    assert handoff.analysis_type == "voip"
    assert handoff.index is index
    assert len(index) == len(MIXED)
    for item in index:
        assert item.display == (item.conv_id in {0, 2})


def _store_with_protocols() -> CallRecordStore:
    store = CallRecordStore()
    store.upsert(
        ClassificationEvent(
            protocol=VoipProtocol.SIP, frame_number=1, rel_ts=0.0, payload=SipInfo(call_identifier="abc@host")
        )
    )
    isup_id = store.upsert(
        ClassificationEvent(
            protocol=VoipProtocol.ISUP, frame_number=2, rel_ts=0.1, payload=IsupInfo(cic=12, ni=2, opc=100, dpc=200)
        )
    )
    store.upsert(ClassificationEvent(protocol=VoipProtocol.ISUP, frame_number=20, rel_ts=5.0), isup_id)
    store.upsert(
        ClassificationEvent(
            protocol=VoipProtocol.H323,
            frame_number=3,
            rel_ts=0.2,
            payload=H323Info(guid="0102", q931_crv=0x1234, q931_crv2=0x0001, h245_addresses=[("10.0.0.9", 4000)]),
        )
    )
    store.upsert(
        ClassificationEvent(protocol=VoipProtocol.H248, frame_number=4, rel_ts=0.3, payload=H248Info(context_id=31))
    )
    store.upsert(ClassificationEvent(protocol=VoipProtocol.MGCP, frame_number=5, rel_ts=0.4))
    return store


def test_protocol_filter_uses_correlation_fields() -> None:
    store = _store_with_protocols()

    assert compile_protocol_filter({0}, store) == '((sip.Call-ID == "abc@host"))'
    assert compile_protocol_filter({1}, store) == (
        "((isup.cic == 12 and frame.number >= 2 and frame.number <= 20 and mtp3.network_indicator == 2 "
        "and ((mtp3.dpc == 200) and (mtp3.opc == 100)) or ((mtp3.dpc == 100) and (mtp3.opc == 200))))"
    )
    assert compile_protocol_filter({2}, store) == (
        "(((h225.guid == 0102 || q931.call_ref == 34:12 || q931.call_ref == 1:0)"
        " || (ip.addr == 10.0.0.9 && tcp.port == 4000 && h245)))"
    )
    assert compile_protocol_filter({3}, store) == "((h248.ctx == 0x1f))"
    assert compile_protocol_filter({4}, store) == "((frame))"
    assert compile_protocol_filter({0, 4}, store) == '((sip.Call-ID == "abc@host") or (frame))'
    assert compile_protocol_filter(set(), store) == ""


def test_build_filter_falls_back_only_above_limit() -> None:
    store = _store_with_protocols()
    index = _index([(0, 1), (1, 2), (0, 6), (0, 7)])
    frames = "frame.number == 1 or frame.number == 6 or frame.number == 7"

    assert build_filter({0}, index, store) == frames
    assert build_filter({0}, index, store, max_length=len(frames)) == frames
    assert build_filter({0}, index, store, max_length=10) == '((sip.Call-ID == "abc@host"))'


def test_calls_created_in_open_batch_are_not_dangling() -> None:
    store = CallRecordStore()
    index = SequenceIndex()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        with store.batch():
            call_id = store.upsert(ClassificationEvent(protocol=VoipProtocol.SIP, frame_number=4, rel_ts=0.0))
            index.append(call_id, 4)
            assert call_id not in store
            assert compile_filter({call_id}, index, store) == "frame.number == 4"
