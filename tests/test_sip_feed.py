from __future__ import annotations

from pathlib import Path

import pytest

from voiptap.services.call_store import CallState
from voiptap.services.calls_session import VoipCallsSession
from voiptap.services.sip_feed import _call_state, _identity, _parse_start_line, iter_sip_events, replay_pcap


def test_iter_sip_events_skips_non_sip_frames(sip_pcap: Path) -> None:
    events = list(iter_sip_events(sip_pcap))

    assert [event.frame_number for event in events] == [1, 3, 4, 5, 6]
    invite = events[0]
    assert invite.correlation_key == "call-a"
    assert invite.method == "INVITE"
    assert invite.frame_label == "INVITE SDP"
    assert invite.rel_ts == 0.0
    assert invite.src == "10.0.0.1"
    assert invite.from_identity == "sip:alice@example.com"
    assert invite.to_identity == "sip:bob@example.com"
    assert invite.payload.invite_cseq == 1
    assert events[1].frame_label == "180 Ringing"
    assert events[1].method is None
    assert events[1].call_state is CallState.RINGING
    assert events[4].rel_ts == pytest.approx(10.25)


def test_missing_pcap_raises_value_error(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        list(iter_sip_events(tmp_path / "missing.pcap"))


def test_replay_only_invites(sip_pcap: Path) -> None:
    session = VoipCallsSession()
    accepted = replay_pcap(session, sip_pcap, batch_size=2)

    assert accepted == 4
    assert len(session.store) == 1
    record = session.store.get(0)
    assert record.packet_count == 4
    assert record.call_state is CallState.COMPLETED
    assert record.start_rel_ts == 0.0
    assert record.stop_rel_ts == pytest.approx(10.25)
    assert record.start_frame_ref == 1
    assert record.from_identity == "sip:alice@example.com"
    assert [item.frame_number for item in session.sequence] == [1, 3, 5, 6]
    assert [row.call_id for row in session.table.rows] == [0]


def test_replay_all_flows_lists_registrations(sip_pcap: Path) -> None:
    session = VoipCallsSession(all_flows=True)
    replay_pcap(session, sip_pcap)

    assert session.title == "SIP Flows"
    assert len(session.store) == 2
    assert session.tap.call_id_for(session.store.get(1).protocol, "reg-b") == 1
    assert session.prepare_filter([1]) == "frame.number == 4"


def test_start_line_and_state_parsing() -> None:
    assert _parse_start_line("SIP/2.0 486 Busy Here") == (False, None, 486, "Busy Here")
    assert _parse_start_line("cancel sip:bob@x SIP/2.0") == (True, "CANCEL", None, "")
    assert _call_state(False, None, 486, "INVITE") is CallState.REJECTED
    assert _call_state(False, None, 407, "INVITE") is None
    assert _call_state(False, None, 200, "BYE") is None
    assert _identity("Bob <sip:bob@x>;tag=1") == "sip:bob@x"
    assert _identity("sip:carol@x;tag=2") == "sip:carol@x"
