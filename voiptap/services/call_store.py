"""
Call record store for the VoIP calls tap.

Records are created once per detected call and then revised in place as later
packets of the same call are classified. The store never reorders or deletes
records during a session; readers get a published snapshot so a batch of
updates becomes visible all at once.
"""
from __future__ import annotations

import contextlib
import copy
import logging
import threading
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, Hashable, Iterator, List, Optional, Tuple, Union

from voiptap.errors import MalformedEventError
from voiptap.services.addresses import Address, parse_address

LOGGER = logging.getLogger(__name__)

RIGHTWARDS_ARROW = "→"


class VoipProtocol(Enum):
    SIP = "SIP"
    ISUP = "ISUP"
    H323 = "H.323"
    MGCP = "MGCP"
    AC_ISDN = "AC_ISDN"
    AC_CAS = "AC_CAS"
    T38 = "T.38"
    H248 = "H.248"
    SCCP = "SCCP"
    UNISTIM = "UNISTIM"
    SKINNY = "SKINNY"
    IAX2 = "IAX2"
    COMMON = "VoIP"


class CallState(Enum):
    NO_STATE = ""
    CALL_SETUP = "CALL SETUP"
    RINGING = "RINGING"
    IN_CALL = "IN CALL"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({CallState.CANCELLED, CallState.COMPLETED, CallState.REJECTED})


@dataclass
class CommonInfo:
    pass


@dataclass
class SipInfo:
    call_identifier: Optional[str] = None
    invite_cseq: Optional[int] = None


@dataclass
class IsupInfo:
    cic: Optional[int] = None
    ni: Optional[int] = None
    opc: Optional[int] = None
    dpc: Optional[int] = None


@dataclass
class H323Info:
    guid: Optional[str] = None
    q931_crv: Optional[int] = None
    q931_crv2: Optional[int] = None
    is_h245_tunneling: Optional[bool] = None
    is_faststart_setup: Optional[bool] = None
    is_faststart_proc: Optional[bool] = None
    h245_addresses: List[Tuple[Address, int]] = field(default_factory=list)


@dataclass
class H248Info:
    context_id: Optional[int] = None


ProtocolPayload = Union[CommonInfo, SipInfo, IsupInfo, H323Info, H248Info]

PAYLOAD_TYPES = {
    VoipProtocol.SIP: SipInfo,
    VoipProtocol.ISUP: IsupInfo,
    VoipProtocol.H323: H323Info,
    VoipProtocol.H248: H248Info,
}


def empty_payload(protocol: VoipProtocol) -> ProtocolPayload:
    return PAYLOAD_TYPES.get(protocol, CommonInfo)()


@dataclass
class ClassificationEvent:
    """One packet's contribution to a call, as produced by the dissection pipeline."""
    protocol: VoipProtocol
    frame_number: Optional[int]
    rel_ts: Optional[float]
    correlation_key: Optional[Hashable] = None
    src: Address = None
    dst: Address = None
    from_identity: Optional[str] = None
    to_identity: Optional[str] = None
    call_state: Optional[CallState] = None
    comment: Optional[str] = None
    protocol_name: Optional[str] = None
    payload: Optional[ProtocolPayload] = None
    method: Optional[str] = None  # signaling method, e.g. INVITE
    frame_label: str = ""


@dataclass
class CallRecord:
    call_id: int
    protocol: VoipProtocol
    payload: ProtocolPayload
    initial_speaker: Address = None
    from_identity: str = ""
    to_identity: str = ""
    start_rel_ts: float = 0.0
    stop_rel_ts: float = 0.0
    packet_count: int = 0
    call_state: CallState = CallState.NO_STATE
    comment: str = ""
    start_frame_ref: Optional[int] = None
    stop_frame_ref: Optional[int] = None
    protocol_name: Optional[str] = None

    @property
    def display_protocol(self) -> str:
        if self.protocol is VoipProtocol.COMMON and self.protocol_name:
            return self.protocol_name
        return self.protocol.value


def format_comment(record: CallRecord) -> str:
    """Render the Comments column, dispatching on the record's protocol tag."""
    payload = record.payload
    if record.protocol is VoipProtocol.ISUP and isinstance(payload, IsupInfo):
        if None in (payload.ni, payload.opc, payload.dpc):
            return ""
        return f"{payload.ni}-{payload.opc} {RIGHTWARDS_ARROW} {payload.ni}-{payload.dpc}"
    if record.protocol is VoipProtocol.H323 and isinstance(payload, H323Info):
        if record.call_state is CallState.CALL_SETUP:
            fast_start = bool(payload.is_faststart_setup)
        else:
            fast_start = bool(payload.is_faststart_setup) and bool(payload.is_faststart_proc)
        tunneling = "On" if payload.is_h245_tunneling else "Off"
        return f"Tunneling: {tunneling}  Fast Start: {'On' if fast_start else 'Off'}"
    return record.comment or ""


def merge_payload(target: ProtocolPayload, delta: ProtocolPayload) -> None:
    for f in fields(delta):
        value = getattr(delta, f.name)
        if f.name == "h245_addresses":
            known = getattr(target, f.name)
            for entry in value:
                if entry not in known:
                    known.append(entry)
            continue
        if value is not None:
            setattr(target, f.name, value)


def next_call_state(current: CallState, proposed: Optional[CallState]) -> CallState:
    if proposed is None or proposed is current:
        return current
    # Terminal states only give way to another terminal state.
    if current.is_terminal and not proposed.is_terminal:
        return current
    # The final error response to a cancelled setup does not make it rejected.
    if current is CallState.CANCELLED and proposed is CallState.REJECTED:
        return current
    return proposed


class CallRecordStore:
    def __init__(self, lock: Optional[threading.RLock] = None) -> None:
        self._lock = lock or threading.RLock()
        self._records: List[CallRecord] = []
        self._by_id: Dict[int, CallRecord] = {}
        self._next_id = 0
        self._batch_depth = 0
        self._dirty: set[int] = set()
        self._published: Tuple[CallRecord, ...] = ()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def __len__(self) -> int:
        return len(self._published)

    @property
    def in_batch(self) -> bool:
        return self._batch_depth > 0

    def __contains__(self, call_id: object) -> bool:
        return self.get(call_id) is not None  # type: ignore[arg-type]

    def knows(self, call_id: int) -> bool:
        """True for any created record, including ones a running batch has not published yet."""
        with self._lock:
            return call_id in self._by_id

    @contextlib.contextmanager
    def batch(self) -> Iterator["CallRecordStore"]:
        """Group updates; readers see none of them until the outermost scope exits."""
        with self._lock:
            self._batch_depth += 1
            try:
                yield self
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0:
                    self._publish()

    def upsert(self, event: ClassificationEvent, call_id: Optional[int] = None) -> int:
        if event.frame_number is None or event.rel_ts is None:
            raise MalformedEventError("classification event has no frame number or timestamp")
        with self._lock:
            if call_id is None:
                record = self._create(event)
            else:
                record = self._by_id.get(call_id)
                if record is None:
                    raise MalformedEventError(f"unknown call_id={call_id}")
                if record.protocol is not event.protocol:
                    raise MalformedEventError(
                        f"protocol mismatch call_id={call_id} record={record.protocol.value} event={event.protocol.value}"
                    )
                if event.payload is not None and not isinstance(event.payload, type(record.payload)):
                    raise MalformedEventError(f"payload type mismatch call_id={call_id}")
                self._update(record, event)
            self._dirty.add(record.call_id)
            if self._batch_depth == 0:
                self._publish()
            return record.call_id

    def _create(self, event: ClassificationEvent) -> CallRecord:
        payload = copy.deepcopy(event.payload) if event.payload is not None else empty_payload(event.protocol)
        if not isinstance(payload, PAYLOAD_TYPES.get(event.protocol, CommonInfo)):
            raise MalformedEventError(f"payload {type(payload).__name__} does not match protocol {event.protocol.value}")
        record = CallRecord(
            call_id=self._next_id,
            protocol=event.protocol,
            payload=payload,
            initial_speaker=parse_address(event.src),
            from_identity=event.from_identity or "",
            to_identity=event.to_identity or "",
            start_rel_ts=float(event.rel_ts),
            stop_rel_ts=float(event.rel_ts),
            packet_count=1,
            call_state=event.call_state or CallState.NO_STATE,
            comment=event.comment or "",
            start_frame_ref=event.frame_number,
            stop_frame_ref=event.frame_number,
            protocol_name=event.protocol_name,
        )
        self._next_id += 1
        self._records.append(record)
        self._by_id[record.call_id] = record
        LOGGER.debug(
            "Call created call_id=%s protocol=%s frame=%s",
            record.call_id,
            record.protocol.value,
            event.frame_number,
            extra={"category": "CALLS"},
        )
        return record

    def _update(self, record: CallRecord, event: ClassificationEvent) -> None:
        rel_ts = float(event.rel_ts)
        if rel_ts >= record.stop_rel_ts:
            record.stop_rel_ts = rel_ts
            record.stop_frame_ref = event.frame_number
        record.packet_count += 1
        record.call_state = next_call_state(record.call_state, event.call_state)
        if event.from_identity and not record.from_identity:
            record.from_identity = event.from_identity
        if event.to_identity and not record.to_identity:
            record.to_identity = event.to_identity
        if event.comment:
            record.comment = event.comment
        if event.protocol_name and not record.protocol_name:
            record.protocol_name = event.protocol_name
        if event.payload is not None:
            merge_payload(record.payload, event.payload)

    def _publish(self) -> None:
        if not self._dirty and len(self._published) == len(self._records):
            return
        published = list(self._published)
        for position in range(len(published), len(self._records)):
            published.append(copy.deepcopy(self._records[position]))
            self._dirty.discard(self._records[position].call_id)
        for call_id in self._dirty:
            # call ids are assigned in creation order, so id == store position
            published[call_id] = copy.deepcopy(self._by_id[call_id])
        self._dirty.clear()
        self._published = tuple(published)

    def iterate(self) -> Iterator[CallRecord]:
        """Creation-order walk over the last published snapshot; call again to restart."""
        snapshot = self._published
        for record in snapshot:
            yield record

    def snapshot(self, start: int = 0) -> Tuple[CallRecord, ...]:
        return self._published[start:]

    def get(self, call_id: int) -> Optional[CallRecord]:
        snapshot = self._published
        if not isinstance(call_id, int) or not 0 <= call_id < len(snapshot):
            return None
        return snapshot[call_id]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_id.clear()
            self._dirty.clear()
            self._next_id = 0
            self._published = ()
