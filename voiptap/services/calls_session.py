"""
Session context for the VoIP calls tap.

One ``VoipCallsSession`` owns the call store, the sequence index, the tap
adapter and the rendered call table for a single open capture. It is the
object threaded through every callback (ingestion, redraw, teardown) and
user action (activate, prepare filter, flow sequence).
"""
from __future__ import annotations

import contextlib
import logging
import threading
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from voiptap.config_loader import AppConfig
from voiptap.logging_setup import correlation_context, short_uuid
from voiptap.services.call_store import CallRecordStore, ClassificationEvent
from voiptap.services.call_table import CallTable, CallTableRow
from voiptap.services.filter_compiler import SequenceHandoff, build_filter, compile_sequence_selection
from voiptap.services.sequence_index import SequenceIndex
from voiptap.services.voip_tap import FlowShow, VoipCallsTap

LOGGER = logging.getLogger(__name__)


class VoipCallsSession:
    def __init__(self, config: Optional[AppConfig] = None, all_flows: Optional[bool] = None) -> None:
        self.config = config or AppConfig()
        self.session_id = short_uuid()
        self._lock = threading.RLock()
        if all_flows is None:
            flow_show = self.config.calls.flow_show
        else:
            flow_show = FlowShow.ALL if all_flows else FlowShow.ONLY_INVITES

        self.store = CallRecordStore(self._lock)
        self.sequence = SequenceIndex()
        self.tap = VoipCallsTap(self.store, self.sequence, flow_show, on_redraw=self._handle_redraw, lock=self._lock)
        self.table = CallTable(
            sort_column=self.config.table.sort_column,
            descending=self.config.table.descending,
            time_precision=self.config.calls.time_precision,
        )
        self.closed = False

        # Hooks for the hosting surface; None means nobody is listening.
        self.on_redraw: Optional[Callable[["VoipCallsSession"], None]] = None
        self.on_go_to_frame: Optional[Callable[[int], None]] = None
        self.on_filter_ready: Optional[Callable[[str], None]] = None
        self.on_sequence_ready: Optional[Callable[[SequenceHandoff], None]] = None

    @property
    def title(self) -> str:
        return "SIP Flows" if self.tap.flow_show is FlowShow.ALL else "VoIP Calls"

    def open(self) -> None:
        with self._lock:
            self.session_id = short_uuid()
            self.store.clear()
            self.sequence.clear()
            self.table.clear()
            self.tap.reset()
            self.closed = False
        with correlation_context(self.session_id):
            LOGGER.info("Session opened title=%s", self.title, extra={"category": "TAP"})

    def close(self) -> None:
        with self._lock:
            self.tap.detach()
            self.closed = True
        with correlation_context(self.session_id):
            LOGGER.info(
                "Session closed calls=%s events=%s malformed=%s",
                len(self.store),
                len(self.sequence),
                self.tap.malformed_events,
                extra={"category": "TAP"},
            )

    @contextlib.contextmanager
    def batch(self) -> Iterator["VoipCallsSession"]:
        with self.tap.batch():
            yield self

    def tap_packet(self, event: ClassificationEvent) -> bool:
        with correlation_context(self.session_id):
            return self.tap.packet(event)

    def tap_draw(self) -> bool:
        with correlation_context(self.session_id):
            return self.tap.draw()

    def _handle_redraw(self) -> None:
        self.refresh_table()
        if self.on_redraw is not None:
            self.on_redraw(self)

    def refresh_table(self) -> List[CallTableRow]:
        with self._lock:
            return self.table.refresh(self.store)

    def activate(self, call_id: int) -> Optional[int]:
        record = self.store.get(call_id)
        if record is None or record.start_frame_ref is None:
            return None
        if self.on_go_to_frame is not None:
            self.on_go_to_frame(record.start_frame_ref)
        return record.start_frame_ref

    def select_all(self) -> List[int]:
        return [record.call_id for record in self.store.iterate()]

    def actions_enabled(self, selected_call_ids: Iterable[int]) -> Dict[str, bool]:
        have_items = len(self.sequence) > 0
        selected = bool(set(selected_call_ids))
        return {
            "prepare_filter": selected and have_items,
            "flow_sequence": selected and have_items,
            # No audio player in this tool.
            "play_call": False,
        }

    def prepare_filter(self, selected_call_ids: Iterable[int]) -> str:
        selected = set(selected_call_ids)
        if not selected:
            return ""
        with correlation_context(self.session_id), self._lock:
            filter_str = build_filter(selected, self.sequence, self.store, self.config.filter.max_length)
        if self.on_filter_ready is not None:
            self.on_filter_ready(filter_str)
        return filter_str

    def show_sequence(self, selected_call_ids: Iterable[int]) -> Optional[SequenceHandoff]:
        selected = set(selected_call_ids)
        if self.closed or not selected:
            return None
        with correlation_context(self.session_id), self._lock:
            handoff = compile_sequence_selection(selected, self.sequence)
            LOGGER.info(
                "Flow sequence prepared selected=%s visible=%s",
                len(selected),
                len(self.sequence.visible()),
                extra={"category": "SEQUENCE"},
            )
        if self.on_sequence_ready is not None:
            self.on_sequence_ready(handoff)
        return handoff
