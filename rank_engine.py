"""
Sortable rank strings for user-reorderable lists.

A rank looks like ``0|hzzzzz``: a one-character bucket, a ``|`` separator and
a base-36 mantissa read as the fraction ``0.hzzzzz`` (base 36). Mantissas are
never padded and never end in ``0``, so plain string comparison of two ranks
is the same as comparing (bucket, value), and between any two distinct ranks
of a bucket there is always room for another one.

Everything here is pure: no state beyond constants, no I/O.
"""
from __future__ import annotations

import re
from functools import total_ordering

DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
BASE = len(DIGITS)
BUCKETS = "012"
DEFAULT_BUCKET = "0"
SEPARATOR = "|"
# Appends and prepends move by STEP units at BASE_SCALE digits of precision.
BASE_SCALE = 6
STEP = 8
MIDDLE_MANTISSA = "hzzzzz"

RANK_PATTERN = re.compile(r"([012])\|([0-9a-z]*[1-9a-z])")


class RankError(ValueError):
    """Base class for every ranking failure."""


class MalformedRankError(RankError):
    def __init__(self, value: object) -> None:
        super().__init__(f"Malformed rank: {value!r}")
        self.value = value


class RankOrderError(RankError):
    def __init__(self, lower: "Rank", upper: "Rank") -> None:
        super().__init__(f"Rank {lower} must sort before {upper}")
        self.lower = lower
        self.upper = upper


def _floor_at(mantissa: str, scale: int) -> int:
    return int(mantissa[:scale].ljust(scale, "0"), BASE)


def _ceil_at(mantissa: str, scale: int) -> int:
    # Canonical mantissas carry no trailing zeros, so any digit past `scale`
    # means a non-zero remainder.
    return _floor_at(mantissa, scale) + (1 if len(mantissa) > scale else 0)


def _encode(value: int, scale: int) -> str:
    digits = []
    for _ in range(scale):
        value, remainder = divmod(value, BASE)
        digits.append(DIGITS[remainder])
    return "".join(reversed(digits)).rstrip("0")


def _midpoint(low: str, high: str | None) -> str:
    """
    Shortest mantissa strictly between ``low`` and ``high``.

    ``low == ""`` stands for 0 and ``high is None`` for 1. Precision grows one
    digit at a time until the two bounds are at least two units apart, which
    happens at the latest one digit past the longer of the two mantissas.
    """
    scale = 1
    while True:
        lo = _floor_at(low, scale)
        hi = BASE**scale if high is None else _ceil_at(high, scale)
        if hi - lo >= 2:
            return _encode((lo + hi) // 2, scale)
        scale += 1


def next_bucket(bucket: str) -> str:
    if bucket not in BUCKETS:
        raise RankError(f"Unknown bucket: {bucket!r}")
    return BUCKETS[(BUCKETS.index(bucket) + 1) % len(BUCKETS)]


@total_ordering
class Rank:
    __slots__ = ("bucket", "mantissa")

    def __init__(self, bucket: str, mantissa: str) -> None:
        self.bucket = bucket
        self.mantissa = mantissa

    @classmethod
    def parse(cls, value: str) -> "Rank":
        if not isinstance(value, str):
            raise MalformedRankError(value)
        match = RANK_PATTERN.fullmatch(value)
        if not match:
            raise MalformedRankError(value)
        return cls(match.group(1), match.group(2))

    @classmethod
    def middle(cls, bucket: str = DEFAULT_BUCKET) -> "Rank":
        if bucket not in BUCKETS:
            raise RankError(f"Unknown bucket: {bucket!r}")
        return cls(bucket, MIDDLE_MANTISSA)

    def __str__(self) -> str:
        return f"{self.bucket}{SEPARATOR}{self.mantissa}"

    def __repr__(self) -> str:
        return f"Rank({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Rank):
            return NotImplemented
        return str(self) == str(other)

    def __lt__(self, other: "Rank") -> bool:
        if not isinstance(other, Rank):
            return NotImplemented
        return str(self) < str(other)

    def __hash__(self) -> int:
        return hash(str(self))

    def gen_next(self) -> "Rank":
        """Rank sorting right after this one when nothing follows it."""
        candidate = _floor_at(self.mantissa, BASE_SCALE) + STEP
        if candidate < BASE**BASE_SCALE:
            return Rank(self.bucket, _encode(candidate, BASE_SCALE))
        return Rank(self.bucket, _midpoint(self.mantissa, None))

    def gen_prev(self) -> "Rank":
        """Rank sorting right before this one when nothing precedes it."""
        candidate = _ceil_at(self.mantissa, BASE_SCALE) - STEP
        if candidate > 0:
            return Rank(self.bucket, _encode(candidate, BASE_SCALE))
        return Rank(self.bucket, _midpoint("", self.mantissa))

    def between(self, upper: "Rank") -> "Rank":
        if not self < upper:
            raise RankOrderError(self, upper)
        if self.bucket != upper.bucket:
            return self.gen_next()
        return Rank(self.bucket, _midpoint(self.mantissa, upper.mantissa))

    def in_bucket(self, bucket: str) -> "Rank":
        if bucket not in BUCKETS:
            raise RankError(f"Unknown bucket: {bucket!r}")
        return Rank(bucket, self.mantissa)


def compute_rank(before: str | None = None, after: str | None = None) -> str:
    """
    Rank to store for an item placed before ``before`` and after ``after``.

    - neither: the canonical middle rank
    - only ``after``: the next rank past it (append at the tail)
    - only ``before``: the previous rank below it (prepend at the head)
    - both: a rank strictly between them; ``after`` must sort first

    Empty strings count as absent. Raises ``MalformedRankError`` for input that
    does not parse and ``RankOrderError`` when the bounds are equal or inverted.
    """
    lower = Rank.parse(after) if after else None
    upper = Rank.parse(before) if before else None
    if lower is not None and upper is not None:
        return str(lower.between(upper))
    if lower is not None:
        return str(lower.gen_next())
    if upper is not None:
        return str(upper.gen_prev())
    return str(Rank.middle())


def spread(count: int, bucket: str = DEFAULT_BUCKET) -> list[str]:
    """Return ``count`` evenly spaced, increasing ranks inside ``bucket``."""
    if count < 0:
        raise RankError("count must not be negative")
    if bucket not in BUCKETS:
        raise RankError(f"Unknown bucket: {bucket!r}")
    scale = BASE_SCALE
    while BASE**scale < (count + 1) * STEP:
        scale += 1
    gap = BASE**scale // (count + 1)
    return [f"{bucket}{SEPARATOR}{_encode(gap * index, scale)}" for index in range(1, count + 1)]
