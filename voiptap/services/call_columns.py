from __future__ import annotations

from enum import Enum

from voiptap.services.addresses import address_to_display
from voiptap.services.call_store import CallRecord, format_comment

DEFAULT_TIME_PRECISION = 6


class Column(Enum):
    START_TIME = "start_time"
    STOP_TIME = "stop_time"
    INITIAL_SPEAKER = "initial_speaker"
    FROM = "from"
    TO = "to"
    PROTOCOL = "protocol"
    PACKETS = "packets"
    STATE = "state"
    COMMENTS = "comments"

    @property
    def title(self) -> str:
        return COLUMN_TITLES[self]


COLUMN_TITLES = {
    Column.START_TIME: "Start Time",
    Column.STOP_TIME: "Stop Time",
    Column.INITIAL_SPEAKER: "Initial Speaker",
    Column.FROM: "From",
    Column.TO: "To",
    Column.PROTOCOL: "Protocol",
    Column.PACKETS: "Packets",
    Column.STATE: "State",
    Column.COMMENTS: "Comments",
}


def render_cell(record: CallRecord, column: Column, time_precision: int = DEFAULT_TIME_PRECISION) -> str:
    if column is Column.START_TIME:
        return f"{record.start_rel_ts:.{time_precision}f}"
    if column is Column.STOP_TIME:
        return f"{record.stop_rel_ts:.{time_precision}f}"
    if column is Column.INITIAL_SPEAKER:
        return address_to_display(record.initial_speaker)
    if column is Column.FROM:
        return record.from_identity
    if column is Column.TO:
        return record.to_identity
    if column is Column.PROTOCOL:
        return record.display_protocol
    if column is Column.PACKETS:
        return str(record.packet_count)
    if column is Column.STATE:
        return record.call_state.value
    return format_comment(record)
