"""
Line helpers shared by every cart, merge and checkout writer.

A line is identified by ``LineKey(product_id, size, color)``. All matching goes
through ``find_line`` and all totals through ``compute_total`` so the stored
lines and the reported total can never disagree.
"""
from decimal import Decimal
from typing import Iterable, List, NamedTuple, Optional, Sequence


class LineKey(NamedTuple):
    """Canonical identity of a cart line"""
    product_id: str
    size: Optional[str]
    color: Optional[str]

    @classmethod
    def of(cls, product_id, size: Optional[str] = None, color: Optional[str] = None) -> "LineKey":
        # Ids are compared as strings; an empty variant selector means "none"
        return cls(str(product_id), size or None, color or None)


def line_key(line) -> LineKey:
    return LineKey.of(line.product_id, line.size, line.color)


def find_line(lines: Sequence, key: LineKey) -> Optional[int]:
    """Return the index of the line matching ``key``, or None"""
    for index, line in enumerate(lines):
        if line_key(line) == key:
            return index
    return None


def compute_total(lines: Iterable) -> Decimal:
    """Sum of price x quantity over all lines"""
    return sum((line.price * line.quantity for line in lines), Decimal("0"))


def merge_lines(target: Sequence, source: Sequence) -> List:
    """
    Fold ``source`` lines into a copy of ``target``.

    Matching lines have their quantities added; unmatched source lines are
    appended unchanged, keeping their price snapshot.
    """
    merged = [line.model_copy() for line in target]
    for incoming in source:
        index = find_line(merged, line_key(incoming))
        if index is None:
            merged.append(incoming.model_copy())
        else:
            existing = merged[index]
            merged[index] = existing.model_copy(
                update={"quantity": existing.quantity + incoming.quantity}
            )
    return merged
