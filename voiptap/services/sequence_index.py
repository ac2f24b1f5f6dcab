from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, List

from voiptap.services.addresses import Address

LOGGER = logging.getLogger(__name__)

ANALYSIS_TYPE_VOIP = "voip"


@dataclass
class SequenceEvent:
    conv_id: int
    frame_number: int
    display: bool = True
    rel_ts: float = 0.0
    src: Address = None
    dst: Address = None
    frame_label: str = ""
    comment: str = ""


class SequenceIndex:
    """Cross-call chronological events, one per packet that contributed to a call."""

    def __init__(self, analysis_type: str = ANALYSIS_TYPE_VOIP) -> None:
        self.analysis_type = analysis_type
        self._items: List[SequenceEvent] = []
        self._in_order = True

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[SequenceEvent]:
        return iter(list(self._items))

    def append(
        self,
        conv_id: int,
        frame_number: int,
        rel_ts: float = 0.0,
        src: Address = None,
        dst: Address = None,
        frame_label: str = "",
        comment: str = "",
    ) -> SequenceEvent:
        if self._items and frame_number < self._items[-1].frame_number:
            self._in_order = False
            LOGGER.debug(
                "Out of order sequence event frame=%s last=%s",
                frame_number,
                self._items[-1].frame_number,
                extra={"category": "SEQUENCE"},
            )
        item = SequenceEvent(
            conv_id=conv_id,
            frame_number=frame_number,
            rel_ts=rel_ts,
            src=src,
            dst=dst,
            frame_label=frame_label,
            comment=comment,
        )
        self._items.append(item)
        return item

    def sort_stable(self) -> None:
        if self._in_order:
            return
        # list.sort is stable: events of the same frame keep their append order.
        self._items.sort(key=lambda item: item.frame_number)
        self._in_order = True

    def set_visibility(self, predicate: Callable[[int], bool]) -> int:
        shown = 0
        for item in self._items:
            item.display = bool(predicate(item.conv_id))
            if item.display:
                shown += 1
        LOGGER.debug(
            "Sequence visibility updated shown=%s total=%s",
            shown,
            len(self._items),
            extra={"category": "SEQUENCE"},
        )
        return shown

    def visible(self) -> List[SequenceEvent]:
        return [item for item in self._items if item.display]

    def clear(self) -> None:
        self._items.clear()
        self._in_order = True
