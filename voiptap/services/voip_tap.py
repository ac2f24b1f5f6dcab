"""
Tap ingestion adapter.

Bridges the per-packet classification feed into the call store and the
sequence index. The dissection pipeline calls ``packet`` once per relevant
packet and ``draw`` once per processed batch; ``draw`` fires the redraw hook
only when the store changed since the last one.
"""
from __future__ import annotations

import contextlib
import logging
import threading
from enum import Enum
from typing import Callable, Dict, Hashable, Iterator, Optional, Set, Tuple

from voiptap.errors import DetachedSessionError, MalformedEventError
from voiptap.services.call_store import ClassificationEvent, CallRecordStore, VoipProtocol
from voiptap.services.sequence_index import SequenceIndex

LOGGER = logging.getLogger(__name__)

RedrawHook = Callable[[], None]


class FlowShow(Enum):
    ONLY_INVITES = "invites"
    ALL = "all"


class VoipCallsTap:
    def __init__(
        self,
        store: CallRecordStore,
        sequence: SequenceIndex,
        flow_show: FlowShow = FlowShow.ONLY_INVITES,
        on_redraw: Optional[RedrawHook] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self._store = store
        self._sequence = sequence
        self._lock = lock or store.lock
        self.flow_show = flow_show
        self.on_redraw = on_redraw
        self._keys: Dict[Tuple[VoipProtocol, Hashable], int] = {}
        self._seen: Set[Tuple[VoipProtocol, Hashable, int]] = set()
        self.attached = True
        self.redraw = False
        self.malformed_events = 0
        self.ignored_events = 0

    def require_attached(self) -> None:
        if not self.attached:
            raise DetachedSessionError("tap is detached from the capture session")

    def packet(self, event: ClassificationEvent) -> bool:
        """Ingest one classification event; True when the call store changed."""
        try:
            self.require_attached()
        except DetachedSessionError:
            return False
        with self._lock:
            # Teardown may have won the race for the lock.
            if not self.attached:
                return False
            try:
                return self._ingest(event)
            except MalformedEventError as exc:
                self.malformed_events += 1
                LOGGER.warning(
                    "Dropped malformed classification event frame=%s protocol=%s error=%s",
                    event.frame_number,
                    event.protocol.value,
                    exc,
                    extra={"category": "ERRORS"},
                )
                return False

    def _ingest(self, event: ClassificationEvent) -> bool:
        if event.correlation_key is None:
            raise MalformedEventError("classification event has no correlation key")
        key = (event.protocol, event.correlation_key)
        if event.frame_number is not None:
            seen_key = (event.protocol, event.correlation_key, event.frame_number)
            if seen_key in self._seen:
                LOGGER.debug("Duplicate packet ignored frame=%s", event.frame_number, extra={"category": "TAP"})
                return False

        call_id = self._keys.get(key)
        if call_id is None and not self._accepts_new_call(event):
            self.ignored_events += 1
            return False

        stored_id = self._store.upsert(event, call_id)
        if call_id is None:
            self._keys[key] = stored_id
            LOGGER.info(
                "New call call_id=%s protocol=%s key=%s",
                stored_id,
                event.protocol.value,
                event.correlation_key,
                extra={"category": "TAP"},
            )
        self._seen.add((event.protocol, event.correlation_key, int(event.frame_number)))
        self._sequence.append(
            stored_id,
            int(event.frame_number),
            rel_ts=float(event.rel_ts),
            src=event.src,
            dst=event.dst,
            frame_label=event.frame_label,
            comment=event.comment or "",
        )
        self.redraw = True
        return True

    def _accepts_new_call(self, event: ClassificationEvent) -> bool:
        if event.protocol is not VoipProtocol.SIP or self.flow_show is FlowShow.ALL:
            return True
        return (event.method or "").upper() == "INVITE"

    @contextlib.contextmanager
    def batch(self) -> Iterator["VoipCallsTap"]:
        with self._lock, self._store.batch():
            yield self

    def draw(self) -> bool:
        with self._lock:
            if not self.attached or not self.redraw:
                return False
            # Nothing is published until the batch closes; keep the flag for the next draw.
            if self._store.in_batch:
                return False
            self.redraw = False
            if self.on_redraw is not None:
                self.on_redraw()
            return True

    def call_id_for(self, protocol: VoipProtocol, correlation_key: Hashable) -> Optional[int]:
        return self._keys.get((protocol, correlation_key))

    def detach(self) -> None:
        with self._lock:
            self.attached = False
            self.redraw = False
        LOGGER.info("Tap detached", extra={"category": "TAP"})

    def reset(self) -> None:
        with self._lock:
            self._keys.clear()
            self._seen.clear()
            self.attached = True
            self.redraw = False
            self.malformed_events = 0
            self.ignored_events = 0
