from __future__ import annotations

from pathlib import Path

import pytest
from scapy.layers.inet import IP, UDP
from scapy.packet import Raw
from scapy.utils import PcapWriter

SDP_BODY = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 10.0.0.1\r\n"
    "s=-\r\n"
    "c=IN IP4 10.0.0.1\r\n"
    "t=0 0\r\n"
    "m=audio 4000 RTP/AVP 0\r\n"
)


def _sip_message(start_line: str, call_id: str, cseq: str, body: str = "") -> bytes:
    text = (
        f"{start_line}\r\n"
        "Via: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bK-1\r\n"
        'From: "Alice" <sip:alice@example.com>;tag=a1\r\n'
        "To: <sip:bob@example.com>\r\n"
        f"Call-ID: {call_id}\r\n"
        f"CSeq: {cseq}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "\r\n"
        f"{body}"
    )
    return text.encode("utf-8")


def _packet(src: str, dst: str, payload: bytes, ts: float):
    pkt = IP(src=src, dst=dst) / UDP(sport=5060, dport=5060) / Raw(load=payload)
    pkt.time = ts
    return pkt


@pytest.fixture
def sip_pcap(tmp_path: Path) -> Path:
    """
    Frames:
      1 INVITE call-a (SDP)   t=100.0
      2 non-SIP UDP           t=100.1
      3 180 Ringing call-a    t=100.5
      4 REGISTER reg-b        t=101.0
      5 200 OK call-a         t=102.0
      6 BYE call-a            t=110.25
    """
    packets = [
        _packet("10.0.0.1", "10.0.0.2", _sip_message("INVITE sip:bob@example.com SIP/2.0", "call-a", "1 INVITE", SDP_BODY), 100.0),
        _packet("10.0.0.1", "10.0.0.2", b"hello", 100.1),
        _packet("10.0.0.2", "10.0.0.1", _sip_message("SIP/2.0 180 Ringing", "call-a", "1 INVITE"), 100.5),
        _packet("10.0.0.3", "10.0.0.2", _sip_message("REGISTER sip:example.com SIP/2.0", "reg-b", "1 REGISTER"), 101.0),
        _packet("10.0.0.2", "10.0.0.1", _sip_message("SIP/2.0 200 OK", "call-a", "1 INVITE"), 102.0),
        _packet("10.0.0.1", "10.0.0.2", _sip_message("BYE sip:bob@example.com SIP/2.0", "call-a", "2 BYE"), 110.25),
    ]
    pcap_file = tmp_path / "calls.pcap"
    writer = PcapWriter(str(pcap_file), append=False, sync=True)
    for pkt in packets:
        writer.write(pkt)
    writer.close()
    return pcap_file
