"""Version range parsing and intersection (pure).

Understands the range dialects found in project manifests: npm/semver
(``^20.1``, ``~1.2``, ``18.x``, ``>=18 <21``, ``a - b``, ``||``) and PEP 440
(``>=3.8,<4``, ``~=3.10``, ``==3.11.*``). A bare version is a prefix match:
``20`` means any 20.x.y, ``3.11.0`` means exactly 3.11.0.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

Version = Tuple[int, int, int]

ANY_MARKERS = {"", "*", "x", "latest", "stable", "lts", "lts/*", "node", "system"}
_OPERATOR_SPACE = re.compile(r"(>=|<=|~=|==|!=|>|<|=|\^|~)\s+")
_NUMBER = re.compile(r"\d+")


def parse_version(text: str) -> Version:
    """Parse the numeric prefix of a version string into a 3-tuple."""
    parts = _components(text)
    if not parts:
        raise ValueError(f"Not a version: {text!r}")
    padded = [p if p is not None else 0 for p in parts] + [0, 0, 0]
    return (padded[0], padded[1], padded[2])


def format_version(version: Version) -> str:
    return ".".join(str(p) for p in version)


def _components(text: str) -> List[Optional[int]]:
    """Numeric components of a version; wildcards become None."""
    text = text.strip().lower()
    text = re.sub(r"^(v|python-|go|node-v?)", "", text)
    parts: List[Optional[int]] = []
    for piece in text.split(".")[:3]:
        if piece in ("x", "*"):
            parts.append(None)
            break
        match = _NUMBER.match(piece)
        if not match:
            break
        parts.append(int(match.group()))
        if match.end() != len(piece):
            break
    return parts


@dataclass(frozen=True)
class Interval:
    lo: Optional[Version] = None
    lo_inclusive: bool = True
    hi: Optional[Version] = None
    hi_inclusive: bool = False

    def contains(self, version: Version) -> bool:
        if self.lo is not None:
            if version < self.lo or (version == self.lo and not self.lo_inclusive):
                return False
        if self.hi is not None:
            if version > self.hi or (version == self.hi and not self.hi_inclusive):
                return False
        return True

    def intersect(self, other: "Interval") -> Optional["Interval"]:
        lo, lo_inc = self.lo, self.lo_inclusive
        if other.lo is not None and (lo is None or other.lo > lo):
            lo, lo_inc = other.lo, other.lo_inclusive
        elif other.lo is not None and other.lo == lo:
            lo_inc = lo_inc and other.lo_inclusive

        hi, hi_inc = self.hi, self.hi_inclusive
        if other.hi is not None and (hi is None or other.hi < hi):
            hi, hi_inc = other.hi, other.hi_inclusive
        elif other.hi is not None and other.hi == hi:
            hi_inc = hi_inc and other.hi_inclusive

        if lo is not None and hi is not None:
            if lo > hi or (lo == hi and not (lo_inc and hi_inc)):
                return None
        return Interval(lo, lo_inc, hi, hi_inc)


EVERYTHING = Interval()


def _bump(parts: List[Optional[int]], index: int) -> Version:
    numbers = [p or 0 for p in parts[: index + 1]]
    numbers[index] += 1
    numbers += [0] * (3 - len(numbers))
    return (numbers[0], numbers[1], numbers[2])


def _prefix_interval(parts: List[Optional[int]]) -> Interval:
    fixed = [p for p in parts if p is not None]
    if not fixed:
        return EVERYTHING
    lo = parse_version(".".join(str(p) for p in fixed))
    if len(fixed) >= 3:
        return Interval(lo, True, lo, True)
    return Interval(lo, True, _bump(fixed, len(fixed) - 1), False)


def _term_interval(term: str) -> Interval:
    for op in (">=", "<=", "~=", "==", "!=", ">", "<", "=", "^", "~"):
        if term.startswith(op):
            rest = term[len(op):]
            break
    else:
        op, rest = "", term

    parts = _components(rest)
    if not parts or parts[0] is None:
        marker = rest.strip().lower()
        if op in ("", "=", "==") and (marker in ANY_MARKERS or marker.startswith("lts/")):
            return EVERYTHING
        raise ValueError(f"Unparseable version constraint: {term!r}")

    fixed = [p for p in parts if p is not None]
    version = parse_version(".".join(str(p) for p in fixed))

    if op in ("", "=", "=="):
        return _prefix_interval(parts)
    if op == "!=":
        return EVERYTHING
    if op == ">=":
        return Interval(version, True, None)
    if op == ">":
        return Interval(version, False, None)
    if op == "<=":
        return Interval(None, True, version, True)
    if op == "<":
        return Interval(None, True, version, False)
    if op == "^":
        # first non-zero component is the compatibility boundary
        index = next((i for i, p in enumerate(fixed) if p != 0), len(fixed) - 1)
        return Interval(version, True, _bump(fixed, index), False)
    if op == "~":
        index = 1 if len(fixed) >= 2 else 0
        return Interval(version, True, _bump(fixed, index), False)
    # ~= compatible release: drop the last given component
    index = max(len(fixed) - 2, 0)
    return Interval(version, True, _bump(fixed, index), False)


def _intersect_all(intervals: Iterable[Interval]) -> Optional[Interval]:
    result = EVERYTHING
    for interval in intervals:
        narrowed = result.intersect(interval)
        if narrowed is None:
            return None
        result = narrowed
    return result


@dataclass(frozen=True)
class VersionRange:
    """A union of version intervals parsed from a constraint string"""
    spec: str
    intervals: Tuple[Interval, ...]

    def contains(self, version: str) -> bool:
        try:
            parsed = parse_version(version)
        except ValueError:
            return False
        return any(i.contains(parsed) for i in self.intervals)

    def intersects(self, other: "VersionRange") -> bool:
        return any(
            a.intersect(b) is not None for a in self.intervals for b in other.intervals
        )

    @property
    def is_any(self) -> bool:
        return EVERYTHING in self.intervals

    @property
    def exact(self) -> Optional[str]:
        """The single version this range pins, if it pins one."""
        if len(self.intervals) == 1:
            interval = self.intervals[0]
            if interval.lo is not None and interval.lo == interval.hi:
                return format_version(interval.lo)
        return None


def parse_range(spec: Optional[str]) -> VersionRange:
    """Parse a constraint; None and empty strings mean any version."""
    text = (spec or "").strip()
    alternatives = []
    for alternative in text.split("||"):
        alternative = _OPERATOR_SPACE.sub(r"\1", alternative.strip())
        if " - " in alternative:
            low, high = alternative.split(" - ", 1)
            terms = [f">={low.strip()}", f"<={high.strip()}"]
        else:
            terms = [t for t in re.split(r"[,\s]+", alternative) if t]
        if not terms:
            alternatives.append(EVERYTHING)
            continue
        merged = _intersect_all(_term_interval(t) for t in terms)
        if merged is not None:
            alternatives.append(merged)
    return VersionRange(spec=text or "*", intervals=tuple(alternatives))


def ranges_intersect(a: Optional[str], b: Optional[str]) -> bool:
    return parse_range(a).intersects(parse_range(b))


def satisfies(version: str, spec: Optional[str]) -> bool:
    return parse_range(spec).contains(version)


def max_satisfying(versions: Iterable[str], spec: Optional[str]) -> Optional[str]:
    """Highest version from ``versions`` inside ``spec``."""
    wanted = parse_range(spec)
    candidates = []
    for v in versions:
        try:
            parsed = parse_version(v)
        except ValueError:
            continue
        if any(i.contains(parsed) for i in wanted.intervals):
            candidates.append((parsed, v))
    if not candidates:
        return None
    return max(candidates)[1]


def minimum_version(spec: Optional[str]) -> Optional[str]:
    """Lowest concrete version inside ``spec``, or None when it has no lower bound."""
    lows = []
    for interval in parse_range(spec).intervals:
        if interval.lo is None:
            continue
        lo = interval.lo if interval.lo_inclusive else (interval.lo[0], interval.lo[1], interval.lo[2] + 1)
        if interval.contains(lo):
            lows.append(lo)
    return format_version(min(lows)) if lows else None
