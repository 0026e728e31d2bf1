from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Saddle:
    """Highest saddle value between the owning peak and peak ``id``."""

    id: int
    value: float

    def copy(self) -> "Saddle":
        return Saddle(self.id, self.value)


def _saddle_key(s: Saddle):
    return -s.value, s.id


class SaddleList:
    """Saddles of one peak, ordered highest value first (ties by lower id)."""

    def __init__(self, saddles=None):
        self.saddles: list[Saddle] = list(saddles) if saddles is not None else []

    def __len__(self) -> int:
        return len(self.saddles)

    def __iter__(self):
        return iter(self.saddles)

    def __getitem__(self, i: int) -> Saddle:
        return self.saddles[i]

    def __repr__(self) -> str:
        return f"SaddleList({self.saddles!r})"

    def add(self, saddle: Saddle) -> None:
        self.saddles.append(saddle)

    def extend(self, saddles) -> None:
        self.saddles.extend(saddles)

    def sort(self) -> None:
        self.saddles.sort(key=_saddle_key)

    def sort_by_id(self) -> None:
        self.saddles.sort(key=lambda s: s.id)

    def remove_duplicates(self) -> None:
        """Keep one saddle per id (the highest value) and restore the default order."""
        best: dict[int, Saddle] = {}
        for s in self.saddles:
            current = best.get(s.id)
            if current is None or s.value > current.value:
                best[s.id] = s
        self.saddles = list(best.values())
        self.sort()

    def copy(self) -> "SaddleList":
        return SaddleList(s.copy() for s in self.saddles)

    def clear(self) -> None:
        self.saddles = []

    free = clear
