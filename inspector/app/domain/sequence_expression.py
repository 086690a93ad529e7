"""Sequence expressions: "514-590,595,597,602-607" -> [514, ..., 590, 595, 597, 602, ..., 607]."""
from __future__ import annotations

MAX_RANGE_SIZE = 1_000_000


def _to_int(text: str) -> int | None:
    try:
        return int(text.strip())
    except ValueError:
        return None


def parse_sequence_expression(expr: str | None) -> list[int]:
    """Expand a comma-separated list of numbers and ranges.

    Whitespace around commas and dashes is allowed, reversed ranges are swapped,
    unparsable parts are ignored, and ranges larger than MAX_RANGE_SIZE are skipped.
    Order of appearance is preserved.
    """
    result: list[int] = []
    if not expr or not expr.strip():
        return result

    for part in (p.strip() for p in expr.split(",")):
        if not part:
            continue
        dash = part.find("-")
        if dash > 0:
            start = _to_int(part[:dash])
            end = _to_int(part[dash + 1:])
            if start is None or end is None:
                continue
            if end < start:
                start, end = end, start
            if end - start + 1 <= MAX_RANGE_SIZE:
                result.extend(range(start, end + 1))
            continue
        single = _to_int(part)
        if single is not None:
            result.append(single)
    return result
