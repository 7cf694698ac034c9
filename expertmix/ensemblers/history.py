"""Append-only persistent sequence.

Each append creates one node pointing at the previous one, so a state derived
from an older state shares the whole older history instead of copying it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass(frozen=True, eq=False)
class History:
    item: Any
    previous: Optional["History"]
    length: int


def append(history: Optional[History], item: Any) -> History:
    return History(item=item, previous=history, length=length(history) + 1)


def length(history: Optional[History]) -> int:
    return 0 if history is None else history.length


def items(history: Optional[History]) -> List[Any]:
    """Items in insertion order."""
    out = []
    node = history
    while node is not None:
        out.append(node.item)
        node = node.previous
    out.reverse()
    return out


__all__ = ["History", "append", "items", "length"]
