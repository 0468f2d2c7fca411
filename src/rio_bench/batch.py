from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True, slots=True)
class Batch:
    index: int
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end))

    def __str__(self):
        return f"batch {self.index} [{self.start}, {self.end})"


def plan_batches(total: int, per_loop: int) -> list[Batch]:
    """Split ``[0, total)`` into consecutive batches of at most ``per_loop`` accounts."""
    if per_loop <= 0:
        raise ValueError(f"per_loop must be positive, got {per_loop}")
    if total < 0:
        raise ValueError(f"total must not be negative, got {total}")
    return [
        Batch(index=n, start=start, end=min(start + per_loop, total))
        for n, start in enumerate(range(0, total, per_loop))
    ]
