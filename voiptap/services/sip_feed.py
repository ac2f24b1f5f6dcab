"""
SIP replay feed.

Reads a capture file with scapy and turns each SIP message into a
classification event for the calls tap, so a saved pcap can be replayed
through a session the same way a live pipeline would feed it.
"""
from __future__ import annotations

import itertools
import logging
import re
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from scapy.layers.inet import IP, TCP, UDP
from scapy.layers.inet6 import IPv6
from scapy.packet import Raw
from scapy.utils import PcapReader

from voiptap.services.call_store import CallState, ClassificationEvent, SipInfo, VoipProtocol

LOGGER = logging.getLogger(__name__)

_STATUS_LINE_RE = re.compile(r"^SIP/2\.0\s+(\d{3})\s*(.*)$")
_URI_RE = re.compile(r"<([^>]*)>")
# 401/407 are authentication challenges; the INVITE is retried, not rejected.
_AUTH_CHALLENGES = {401, 407}


def iter_sip_events(pcap_path: Path) -> Iterator[ClassificationEvent]:
    if not pcap_path.exists():
        raise ValueError(f"SIP pcap not found: {pcap_path}")

    first_ts: Optional[float] = None
    emitted = 0
    with PcapReader(str(pcap_path)) as reader:
        for frame_number, packet in enumerate(reader, start=1):
            ts = float(getattr(packet, "time", 0.0) or 0.0)
            if first_ts is None:
                first_ts = ts

            src, dst = _extract_addresses(packet)
            if src is None:
                continue
            raw_payload = _extract_transport_payload(packet)
            if not raw_payload:
                continue
            text = raw_payload.decode("utf-8", errors="ignore")
            if "SIP/2.0" not in text:
                continue

            start_line, headers, body = _split_message(text)
            is_request, method, status_code, reason = _parse_start_line(start_line)
            if not is_request and status_code is None:
                continue
            call_id = headers.get("call-id") or headers.get("i")
            cseq_num, cseq_method = _parse_cseq(headers.get("cseq"))
            has_sdp = "m=" in body

            emitted += 1
            yield ClassificationEvent(
                protocol=VoipProtocol.SIP,
                frame_number=frame_number,
                rel_ts=ts - first_ts,
                correlation_key=call_id,
                src=src,
                dst=dst,
                from_identity=_identity(headers.get("from") or headers.get("f")),
                to_identity=_identity(headers.get("to") or headers.get("t")),
                call_state=_call_state(is_request, method, status_code, cseq_method),
                payload=SipInfo(
                    call_identifier=call_id,
                    invite_cseq=cseq_num if is_request and method == "INVITE" else None,
                ),
                method=method if is_request else None,
                frame_label=_frame_label(is_request, method, status_code, reason, has_sdp),
                comment=f"SIP {'Request' if is_request else 'Status'}",
            )

    LOGGER.info("SIP feed finished pcap=%s events=%d", pcap_path, emitted, extra={"category": "FILES"})


def replay_pcap(session, pcap_path: Path, batch_size: int = 100) -> int:
    """Open ``session`` and feed every SIP event from ``pcap_path``; returns the events accepted."""
    if not pcap_path.exists():
        raise ValueError(f"SIP pcap not found: {pcap_path}")

    session.open()
    accepted = 0
    events = iter_sip_events(pcap_path)
    while True:
        chunk = list(itertools.islice(events, max(1, batch_size)))
        if not chunk:
            break
        with session.batch():
            for event in chunk:
                if session.tap_packet(event):
                    accepted += 1
        session.tap_draw()
    session.tap_draw()
    LOGGER.info(
        "Replay completed pcap=%s accepted=%d calls=%d",
        pcap_path,
        accepted,
        len(session.store),
        extra={"category": "TAP"},
    )
    return accepted


def _extract_addresses(packet) -> Tuple[Optional[str], Optional[str]]:
    if IP in packet:
        return packet[IP].src, packet[IP].dst
    if IPv6 in packet:
        return packet[IPv6].src, packet[IPv6].dst
    return None, None


def _extract_transport_payload(packet) -> Optional[bytes]:
    if UDP in packet and Raw in packet[UDP]:
        return bytes(packet[UDP][Raw].load)
    if TCP in packet and Raw in packet[TCP]:
        return bytes(packet[TCP][Raw].load)
    # Port 5060 may be bound to a dissector layer instead of Raw.
    for layer in (UDP, TCP):
        if layer in packet:
            return bytes(packet[layer].payload) or None
    return None


def _split_message(text: str) -> Tuple[str, Dict[str, str], str]:
    normalized = text.replace("\r\n", "\n")
    parts = normalized.split("\n\n", 1)
    header_lines = parts[0].splitlines()
    start_line = header_lines[0].strip() if header_lines else ""
    body = parts[1] if len(parts) > 1 else ""

    headers: Dict[str, str] = {}
    for line in header_lines[1:]:
        if ":" not in line:
            continue
        name, value = line.split(":", 1)
        # Preserve the first occurrence (multiple Via headers).
        headers.setdefault(name.strip().lower(), value.strip())
    return start_line, headers, body


def _parse_start_line(start_line: str) -> Tuple[bool, Optional[str], Optional[int], str]:
    # Request: "INVITE sip:... SIP/2.0"
    # Response: "SIP/2.0 200 OK"
    if start_line.startswith("SIP/2.0"):
        match = _STATUS_LINE_RE.match(start_line)
        if not match:
            return False, None, None, ""
        return False, None, int(match.group(1)), match.group(2).strip()

    parts = start_line.split()
    if len(parts) < 3 or parts[-1] != "SIP/2.0":
        return True, None, None, ""
    return True, parts[0].upper(), None, ""


def _parse_cseq(value: Optional[str]) -> Tuple[Optional[int], Optional[str]]:
    # Example: "CSeq: 102 INVITE"
    if not value:
        return None, None
    parts = value.split()
    if len(parts) < 2:
        return None, None
    try:
        return int(parts[0]), parts[1].upper()
    except ValueError:
        return None, parts[1].upper()


def _identity(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = _URI_RE.search(value)
    if match:
        return match.group(1).strip()
    return value.split(";", 1)[0].strip()


def _call_state(
    is_request: bool,
    method: Optional[str],
    status_code: Optional[int],
    cseq_method: Optional[str],
) -> Optional[CallState]:
    if is_request:
        if method == "INVITE":
            return CallState.CALL_SETUP
        if method == "CANCEL":
            return CallState.CANCELLED
        if method == "BYE":
            return CallState.COMPLETED
        return None

    if cseq_method != "INVITE" or status_code is None:
        return None
    if status_code in (180, 183):
        return CallState.RINGING
    if 200 <= status_code < 300:
        return CallState.IN_CALL
    if status_code >= 300 and status_code not in _AUTH_CHALLENGES:
        return CallState.REJECTED
    return None


def _frame_label(
    is_request: bool,
    method: Optional[str],
    status_code: Optional[int],
    reason: str,
    has_sdp: bool,
) -> str:
    parts: List[str] = []
    if is_request:
        parts.append(method or "?")
    else:
        parts.append(f"{status_code} {reason}".strip())
    if has_sdp:
        parts.append("SDP")
    return " ".join(parts)
