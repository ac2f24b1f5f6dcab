from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from voiptap.services.call_columns import DEFAULT_TIME_PRECISION, Column, render_cell
from voiptap.services.call_sort import sort_rows
from voiptap.services.call_store import CallRecord, CallRecordStore

LOGGER = logging.getLogger(__name__)


@dataclass
class CallTableRow:
    position: int
    record: CallRecord
    texts: Dict[Column, str] = field(default_factory=dict)

    @property
    def call_id(self) -> int:
        return self.record.call_id

    def text(self, column: Column) -> str:
        return self.texts.get(column, "")

    def redraw(self, record: CallRecord, time_precision: int) -> None:
        self.record = record
        self.texts = {column: render_cell(record, column, time_precision) for column in Column}


class CallTable:
    """
    Rendered view of the call store.

    Rows are appended by store position (the store never reorders), every
    row is redrawn from its current record on each refresh, and the active
    sort is re-applied once the whole pass is done.
    """

    def __init__(
        self,
        sort_column: Column = Column.START_TIME,
        descending: bool = False,
        time_precision: int = DEFAULT_TIME_PRECISION,
    ) -> None:
        self.sort_column = sort_column
        self.descending = descending
        self.time_precision = time_precision
        self._by_position: List[CallTableRow] = []
        self._rows: List[CallTableRow] = []
        self._sorting_enabled = True
        self._widths: Dict[Column, int] = {}

    @property
    def rows(self) -> List[CallTableRow]:
        return list(self._rows)

    def __len__(self) -> int:
        return len(self._by_position)

    @contextlib.contextmanager
    def sorting_suspended(self) -> Iterator[None]:
        """Defer sorting; ``sort_by`` calls made inside only record the key. The outermost exit sorts once."""
        previous = self._sorting_enabled
        self._sorting_enabled = False
        try:
            yield
        finally:
            self._sorting_enabled = previous
            self._apply_sort()

    def refresh(self, store: CallRecordStore) -> List[CallTableRow]:
        snapshot = store.snapshot()
        if len(snapshot) < len(self._by_position):
            # Store was cleared by a new session; start over.
            self.clear()

        with self.sorting_suspended():
            added = 0
            for position in range(len(self._by_position), len(snapshot)):
                row = CallTableRow(position=position, record=snapshot[position])
                self._by_position.append(row)
                self._rows.append(row)
                added += 1
            for row in self._by_position:
                row.redraw(snapshot[row.position], self.time_precision)

        self._resize_columns()
        LOGGER.debug(
            "Call table refreshed rows=%s added=%s sort=%s descending=%s",
            len(self._by_position),
            added,
            self.sort_column.value,
            self.descending,
            extra={"category": "TABLE"},
        )
        return self.rows

    def sort_by(self, column: Column, descending: bool = False) -> List[CallTableRow]:
        self.sort_column = column
        self.descending = descending
        self._apply_sort()
        return self.rows

    def _apply_sort(self) -> None:
        if not self._sorting_enabled:
            return
        self._rows = sort_rows(self._rows, self.sort_column, self.descending)

    def _resize_columns(self) -> None:
        widths = {column: len(column.title) for column in Column}
        for row in self._by_position:
            for column in Column:
                widths[column] = max(widths[column], len(row.text(column)))
        self._widths = widths

    def column_widths(self) -> Dict[Column, int]:
        return dict(self._widths)

    def row_for(self, call_id: int) -> Optional[CallTableRow]:
        for row in self._by_position:
            if row.call_id == call_id:
                return row
        return None

    def as_dicts(self) -> List[Dict[str, object]]:
        out: List[Dict[str, object]] = []
        for row in self._rows:
            item: Dict[str, object] = {"call_id": row.call_id}
            for column in Column:
                item[column.value] = row.text(column)
            out.append(item)
        return out

    def clear(self) -> None:
        self._by_position.clear()
        self._rows.clear()
        self._widths = {}
