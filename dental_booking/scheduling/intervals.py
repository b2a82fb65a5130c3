"""Half-open interval arithmetic used by availability and conflict checks."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from dental_booking.scheduling.models import Interval


def overlaps(a: Interval, b: Interval) -> bool:
    """Return True when ``[a.start, a.end)`` and ``[b.start, b.end)`` intersect."""
    return a.start < b.end and b.start < a.end


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Merge overlapping or touching intervals into a sorted, disjoint list."""
    ordered = sorted(intervals, key=lambda i: (i.start, i.end))
    if not ordered:
        return []

    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = Interval(start=last.start, end=current.end)
        else:
            merged.append(current)
    return merged


def subtract(interval: Interval, block: Interval) -> list[Interval]:
    """Remove *block* from *interval*; yields zero, one or two pieces."""
    if not overlaps(interval, block):
        return [interval]

    pieces: list[Interval] = []
    if block.start > interval.start:
        pieces.append(Interval(start=interval.start, end=block.start))
    if block.end < interval.end:
        pieces.append(Interval(start=block.end, end=interval.end))
    return pieces


def free_gaps(
    window: Interval,
    busy: Iterable[Interval],
    duration_minutes: int,
) -> list[Interval]:
    """Complement of *busy* within *window*, keeping gaps that fit *duration_minutes*.

    Busy intervals are clipped to the window and merged first, then walked
    once in start order. A non-positive duration yields no gaps.
    """
    if duration_minutes <= 0:
        return []

    needed = timedelta(minutes=duration_minutes)
    gaps: list[Interval] = []
    cursor = window.start

    for block in merge_intervals(b for b in busy if overlaps(b, window)):
        if block.start > cursor and block.start - cursor >= needed:
            gaps.append(Interval(start=cursor, end=block.start))
        if block.end > cursor:
            cursor = block.end
        if cursor >= window.end:
            break

    if cursor < window.end and window.end - cursor >= needed:
        gaps.append(Interval(start=cursor, end=window.end))
    return gaps
