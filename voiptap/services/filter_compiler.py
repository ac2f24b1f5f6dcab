"""
Selection to display-filter compilation.

The primary form enumerates frames: every sequence event owned by a selected
call contributes one ``frame.number == N`` clause, in index (capture) order.
This is correct for any protocol at the cost of filter length. A
protocol-aware form built from correlation identifiers is available as an
opt-in fallback for selections whose enumeration exceeds a length limit.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from voiptap.errors import InconsistentReferenceWarning
from voiptap.services.addresses import address_to_display
from voiptap.services.call_store import (
    CallRecord,
    CallRecordStore,
    H248Info,
    H323Info,
    IsupInfo,
    SipInfo,
    VoipProtocol,
)
from voiptap.services.sequence_index import SequenceIndex

LOGGER = logging.getLogger(__name__)

FRAME_CLAUSE = "frame.number == {}"
OR_JOIN = " or "
PLACEHOLDER_CLAUSE = "(frame)"


@dataclass
class SequenceHandoff:
    """What the chronological diagram renderer receives."""
    analysis_type: str
    index: SequenceIndex
    selected_call_ids: frozenset


def compile_filter(
    selected_call_ids: Iterable[int],
    events: SequenceIndex,
    store: Optional[CallRecordStore] = None,
) -> str:
    selected = set(selected_call_ids)
    if not selected:
        return ""

    clauses: List[str] = []
    dangling: Set[int] = set()
    for item in events:
        if item.conv_id not in selected:
            continue
        if store is not None and not store.knows(item.conv_id):
            if item.conv_id not in dangling:
                dangling.add(item.conv_id)
                LOGGER.warning(
                    "Sequence event references unknown call conv_id=%s frame=%s; excluded from filter",
                    item.conv_id,
                    item.frame_number,
                    extra={"category": "ERRORS"},
                )
                warnings.warn(
                    f"sequence event references unknown call {item.conv_id}",
                    InconsistentReferenceWarning,
                    stacklevel=2,
                )
            continue
        clauses.append(FRAME_CLAUSE.format(item.frame_number))

    filter_str = OR_JOIN.join(clauses)
    LOGGER.info(
        "Frame filter compiled selected=%s clauses=%s length=%s",
        len(selected),
        len(clauses),
        len(filter_str),
        extra={"category": "FILTER"},
    )
    return filter_str


def compile_sequence_selection(selected_call_ids: Iterable[int], events: SequenceIndex) -> SequenceHandoff:
    selected = frozenset(selected_call_ids)
    events.sort_stable()
    events.set_visibility(lambda conv_id: conv_id in selected)
    return SequenceHandoff(analysis_type=events.analysis_type, index=events, selected_call_ids=selected)


def _crv_bytes(crv: int) -> str:
    return f"{crv & 0x00FF:x}:{(crv & 0xFF00) >> 8:x}"


def _protocol_clause(record: CallRecord) -> str:
    payload = record.payload
    if record.protocol is VoipProtocol.SIP and isinstance(payload, SipInfo) and payload.call_identifier:
        return f'(sip.Call-ID == "{payload.call_identifier}")'

    if record.protocol is VoipProtocol.ISUP and isinstance(payload, IsupInfo):
        if None in (payload.cic, payload.ni, payload.opc, payload.dpc):
            return PLACEHOLDER_CLAUSE
        return (
            f"(isup.cic == {payload.cic} and frame.number >= {record.start_frame_ref} "
            f"and frame.number <= {record.stop_frame_ref} and mtp3.network_indicator == {payload.ni} "
            f"and ((mtp3.dpc == {payload.dpc}) and (mtp3.opc == {payload.opc})) "
            f"or ((mtp3.dpc == {payload.opc}) and (mtp3.opc == {payload.dpc})))"
        )

    if record.protocol is VoipProtocol.H323 and isinstance(payload, H323Info) and payload.guid:
        clause = (
            f"((h225.guid == {payload.guid} || q931.call_ref == {_crv_bytes(payload.q931_crv or 0)} "
            f"|| q931.call_ref == {_crv_bytes(payload.q931_crv2 or 0)})"
        )
        for address, port in payload.h245_addresses:
            clause += f" || (ip.addr == {address_to_display(address)} && tcp.port == {port} && h245)"
        return clause + ")"

    if record.protocol is VoipProtocol.H248 and isinstance(payload, H248Info) and payload.context_id is not None:
        return f"(h248.ctx == 0x{payload.context_id:x})"

    # Keeps the expression valid for protocols without correlation fields.
    return PLACEHOLDER_CLAUSE


def compile_protocol_filter(selected_call_ids: Iterable[int], store: CallRecordStore) -> str:
    selected = set(selected_call_ids)
    if not selected:
        return ""
    clauses = [_protocol_clause(record) for record in store.iterate() if record.call_id in selected]
    if not clauses:
        return ""
    return "(" + OR_JOIN.join(clauses) + ")"


def build_filter(
    selected_call_ids: Iterable[int],
    events: SequenceIndex,
    store: CallRecordStore,
    max_length: int = 0,
) -> str:
    """Frame enumeration, or the protocol-aware form when it exceeds a positive ``max_length``."""
    selected = set(selected_call_ids)
    filter_str = compile_filter(selected, events, store)
    if max_length > 0 and len(filter_str) > max_length:
        LOGGER.info(
            "Frame filter length=%s exceeds max_length=%s; using protocol fields",
            len(filter_str),
            max_length,
            extra={"category": "FILTER"},
        )
        return compile_protocol_filter(selected, store)
    return filter_str
