"""Sorted sets of disjoint byte ranges."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

__all__ = ["Range", "RangeSet"]


@dataclass(frozen=True)
class Range:
    """A half-open byte range starting at ``start`` and spanning ``length`` bytes."""

    start: int
    length: int

    def end(self) -> int:
        """Return the first position past the range."""
        return self.start + self.length

    def __str__(self) -> str:
        return f"[{self.start}, {self.start + self.length - 1}]"


class RangeSet:
    """An ordered collection of non-overlapping, non-touching ranges."""

    def __init__(self, ranges: Optional[Iterable[Range]] = None) -> None:
        self._ranges: list[Range] = []
        for item in ranges or ():
            self.add_range(item)

    def __str__(self) -> str:
        return "(" + "".join(str(item) for item in self._ranges) + ")"

    def __repr__(self) -> str:
        return f"RangeSet({self._ranges!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def is_empty(self) -> bool:
        """Return True if the set holds no ranges."""
        return not self._ranges

    def __len__(self) -> int:
        """Return the total number of bytes covered."""
        return sum(item.length for item in self._ranges)

    def __getitem__(self, index: int) -> Range:
        return self._ranges[index]

    def __iter__(self) -> Iterator[Range]:
        return iter(list(self._ranges))

    def __contains__(self, value: int) -> bool:
        for item in self._ranges:
            if value < item.start:
                return False
            if value < item.end():
                return True
        return False

    def copy(self) -> RangeSet:
        """Return an independent copy of this set."""
        result = RangeSet()
        result._ranges = list(self._ranges)
        return result

    def contained_length_from_value(self, value: int) -> int:
        """Return how many consecutive bytes from ``value`` onward are covered."""
        for item in self._ranges:
            if value < item.start:
                return 0
            if value < item.end():
                return item.end() - value
        return 0

    def contains_range_set(self, other: RangeSet) -> bool:
        """Return True if every range of ``other`` lies within this set."""
        return all(
            self.contained_length_from_value(item.start) >= item.length
            for item in other._ranges
        )

    def add_range(self, range: Range) -> None:
        """Add ``range``, merging it with any ranges it overlaps or touches."""
        if range.length == 0:
            return
        ranges = self._ranges
        for index, existing in enumerate(ranges):
            if range.end() < existing.start:
                ranges.insert(index, range)
                return
            if range.start <= existing.end() and existing.start <= range.end():
                start, end = range.start, range.end()
                while index < len(ranges) and ranges[index].start <= end:
                    end = max(end, ranges[index].end())
                    start = min(start, ranges[index].start)
                    del ranges[index]
                ranges.insert(index, Range(start, end - start))
                return
        ranges.append(range)

    def add_range_set(self, other: RangeSet) -> None:
        """Add every range of ``other`` to this set."""
        for item in other._ranges:
            self.add_range(item)

    def union(self, other: RangeSet) -> RangeSet:
        """Return a new set covering both sets."""
        result = self.copy()
        result.add_range_set(other)
        return result

    def subtract_range(self, range: Range) -> None:
        """Remove the bytes of ``range`` from this set."""
        if range.length == 0:
            return
        ranges = self._ranges
        for index, existing in enumerate(ranges):
            if range.end() <= existing.start:
                return
            if range.start <= existing.start < range.end():
                while index < len(ranges) and ranges[index].end() <= range.end():
                    del ranges[index]
                if index < len(ranges) and ranges[index].start < range.end():
                    remaining = ranges[index]
                    ranges[index] = Range(
                        range.end(), remaining.end() - range.end()
                    )
                return
            if range.end() < existing.end():
                ranges[index] = Range(range.end(), existing.end() - range.end())
                ranges.insert(
                    index, Range(existing.start, range.start - existing.start)
                )
                return
            if range.start < existing.end():
                ranges[index] = Range(existing.start, range.start - existing.start)

    def subtract_range_set(self, other: RangeSet) -> None:
        """Remove every range of ``other`` from this set."""
        for item in other._ranges:
            self.subtract_range(item)

    def minus(self, other: RangeSet) -> RangeSet:
        """Return a new set with the bytes of ``other`` removed."""
        result = self.copy()
        result.subtract_range_set(other)
        return result

    def intersection(self, other: RangeSet) -> RangeSet:
        """Return a new set covering the bytes present in both sets."""
        result = RangeSet()
        mine = iter(self._ranges)
        theirs = iter(other._ranges)
        left = next(mine, None)
        right = next(theirs, None)
        while left is not None and right is not None:
            if left.end() <= right.start:
                left = next(mine, None)
            elif right.end() <= left.start:
                right = next(theirs, None)
            else:
                new_start = max(left.start, right.start)
                new_end = min(left.end(), right.end())
                assert new_start <= new_end
                result.add_range(Range(new_start, new_end - new_start))
                if left.end() <= right.end():
                    left = next(mine, None)
                else:
                    right = next(theirs, None)
        return result