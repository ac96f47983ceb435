"""Turn overlapping detections into a disjoint span set.

``resolve_conflicts`` follows Presidio's anonymizer semantics for scored
entity detections: overlapping spans of the same type are merged into their
union (keeping the best score), then spans that coincide with or sit inside
an already kept span of any type are dropped. Remaining partial overlaps
across types are trimmed: the higher-scored span stays whole and the other
loses the shared characters, so the union of flagged text is preserved.

``resolve_overlaps`` is for pattern-matched secrets, which carry no score:
a left-to-right sweep keeps a span only when it starts at or after the end
of the previously kept one, preferring the longer span on a shared start.

Neither function mutates its input.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from maskproxy.models.entities import Span


def _score(span: Span) -> float:
    return 0.0 if span.score is None else float(span.score)


def _merge_same_type(spans: list[Span]) -> list[Span]:
    ordered = sorted(spans, key=lambda item: (item.start, item.end))
    merged: list[Span] = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.overlaps(last):
            merged[-1] = replace(
                last,
                start=min(last.start, current.start),
                end=max(last.end, current.end),
                score=max(_score(last), _score(current)),
            )
        else:
            merged.append(current)
    return merged


def _remove_conflicting(spans: list[Span]) -> list[Span]:
    ordered = sorted(spans, key=lambda item: (item.start, item.end, -_score(item), item.entity_type))
    kept: list[Span] = []
    for span in ordered:
        if any(existing.contains(span) for existing in kept):
            continue
        kept.append(span)
    return kept


def _trim_intersections(spans: list[Span]) -> list[Span]:
    kept: list[Span] = []
    for span in spans:
        current: Span | None = span
        while current is not None and kept and kept[-1].overlaps(current):
            last = kept[-1]
            if _score(last) >= _score(current):
                current = replace(current, start=last.end) if last.end < current.end else None
                continue
            kept.pop()
            if current.start > last.start:
                kept.append(replace(last, end=current.start))
        if current is not None:
            kept.append(current)
    return kept


def resolve_conflicts(spans: Iterable[Span]) -> list[Span]:
    items = list(spans)
    if len(items) <= 1:
        return items

    by_type: dict[str, list[Span]] = {}
    for item in items:
        by_type.setdefault(item.entity_type, []).append(item)

    pooled: list[Span] = []
    for group in by_type.values():
        pooled.extend(_merge_same_type(group))
    return _trim_intersections(_remove_conflicting(pooled))


def resolve_overlaps(spans: Iterable[Span]) -> list[Span]:
    items = list(spans)
    if len(items) <= 1:
        return items

    ordered = sorted(items, key=lambda item: (item.start, -item.length))
    kept: list[Span] = [ordered[0]]
    for current in ordered[1:]:
        if current.start >= kept[-1].end:
            kept.append(current)
    return kept
