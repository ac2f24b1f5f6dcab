"""
Ordering of call table rows.

Time, speaker and packet columns compare the underlying values; every other
column falls back to a case-sensitive comparison of the rendered cell text.
"""
from __future__ import annotations

import functools
from typing import Any, List, Optional, Sequence

from voiptap.services.addresses import address_sort_key
from voiptap.services.call_columns import DEFAULT_TIME_PRECISION, Column, render_cell
from voiptap.services.call_store import CallRecord


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def compare_calls(
    a: CallRecord,
    b: CallRecord,
    column: Column,
    a_text: Optional[str] = None,
    b_text: Optional[str] = None,
    time_precision: int = DEFAULT_TIME_PRECISION,
) -> int:
    if column is Column.START_TIME:
        return _cmp(a.start_rel_ts, b.start_rel_ts) or _cmp(a.call_id, b.call_id)
    if column is Column.STOP_TIME:
        return _cmp(a.stop_rel_ts, b.stop_rel_ts) or _cmp(a.call_id, b.call_id)
    if column is Column.INITIAL_SPEAKER:
        return _cmp(address_sort_key(a.initial_speaker), address_sort_key(b.initial_speaker))
    if column is Column.PACKETS:
        return _cmp(a.packet_count, b.packet_count)

    if a_text is None:
        a_text = render_cell(a, column, time_precision)
    if b_text is None:
        b_text = render_cell(b, column, time_precision)
    return _cmp(a_text, b_text)


def call_less_than(a: CallRecord, b: CallRecord, column: Column) -> bool:
    return compare_calls(a, b, column) < 0


def sort_rows(rows: Sequence[Any], column: Column, descending: bool = False) -> List[Any]:
    """Sort table rows (objects with ``record`` and ``text(column)``); stable for ties."""

    def row_cmp(left: Any, right: Any) -> int:
        return compare_calls(left.record, right.record, column, left.text(column), right.text(column))

    return sorted(rows, key=functools.cmp_to_key(row_cmp), reverse=descending)
