"""Layout flip: move static data away from the guard edge of the stack region.

Conventional linking places the initial stack pointer at the high edge of
RAM, growing downward, directly above ``.data``/``.bss``.  An overflow then
silently walks into live data.  The flip relocates every statically sized
section to the edge of the region farthest from the guard boundary and
leaves the span next to the guard free of static data, so an overflow
crosses the guard (an unmapped or read-only neighbour) and faults.

For a region R with static usage U and the guard at its low edge::

    R.origin (guard)                    R.end - U            R.end
    |<------------- gap: R.length - U ------>|<--- statics: U --->|

The engine is a pure function of the report and the runtime convention.

Usage::

    from flip_engine import compute_flip_plan

    plan = compute_flip_plan(report, convention)
    for flip in plan.flips:
        print(flip.region.name, hex(flip.static_base), hex(flip.stack_pointer))
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Sequence, Tuple

from convention_loader import RuntimeConvention
from flip_errors import RegionOverflow, UnsupportedLayout
from layout_checks import check_regions_disjoint, select_stack_regions
from memory_map import LinkReport, MemoryRegion, SectionUsage

LOGGER = logging.getLogger("stackflip.engine")

EDGE_LOW = "low"
EDGE_HIGH = "high"


# ---------------------------------------------------------------------------
# Plan data model
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class RegionFlip:
    """The flipped layout of one stack-bearing region."""

    region: MemoryRegion
    static_base: int
    static_size: int
    stack_symbol: str
    stack_pointer: int
    guard: int
    guard_edge: str
    sections: Tuple[str, ...] = ()

    @property
    def static_end(self) -> int:
        return self.static_base + self.static_size

    @property
    def gap_start(self) -> int:
        if self.guard_edge == EDGE_LOW:
            return self.region.origin
        return self.static_end

    @property
    def gap_end(self) -> int:
        if self.guard_edge == EDGE_LOW:
            return self.static_base
        return self.region.end

    @property
    def gap_size(self) -> int:
        return self.gap_end - self.gap_start


@dataclasses.dataclass(frozen=True)
class FlipPlan:
    flips: Tuple[RegionFlip, ...]

    def region(self, name: str) -> Optional[RegionFlip]:
        for flip in self.flips:
            if flip.region.name == name:
                return flip
        return None

    def symbols(self) -> List[str]:
        return [flip.stack_symbol for flip in self.flips]


# ---------------------------------------------------------------------------
# Flip computation
# ---------------------------------------------------------------------------

def _align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def static_footprint(sections: Sequence[SectionUsage], reported_used: Optional[int] = None) -> int:
    """Bytes the relocated statics need.

    The sum of section sizes, raised to the linker's own usage figure when
    that is larger, rounded up to the strictest section alignment so the
    relocated base stays aligned.
    """
    used = sum(s.size for s in sections)
    if reported_used is not None and reported_used > used:
        used = reported_used
    alignment = max((s.alignment for s in sections), default=1)
    return _align_up(used, alignment)


def find_guard_edge(region: MemoryRegion, regions: Sequence[MemoryRegion]) -> Tuple[str, int]:
    """Return the edge of ``region`` not adjoined by mapped writable memory.

    The low edge is preferred when both qualify, matching a descending stack.
    """
    neighbours = [
        r for r in regions
        if r.name != region.name and r.address_space == region.address_space and r.possibly_writable
    ]
    below = [r.name for r in neighbours if r.end == region.origin]
    above = [r.name for r in neighbours if r.origin == region.end]
    if not below:
        return EDGE_LOW, region.origin
    if not above:
        return EDGE_HIGH, region.end
    raise UnsupportedLayout(
        "region '{}' has writable neighbours on both edges; no guard boundary".format(region.name),
        {
            "region": region.name,
            "origin": region.origin,
            "end": region.end,
            "below": ", ".join(below),
            "above": ", ".join(above),
        },
    )


def flip_region(
    region: MemoryRegion,
    sections: Sequence[SectionUsage],
    regions: Sequence[MemoryRegion],
    stack_symbol: str,
    reported_used: Optional[int] = None,
) -> RegionFlip:
    used = static_footprint(sections, reported_used)
    if used >= region.length:
        raise RegionOverflow(region.name, region.origin, region.length, used)

    edge, guard = find_guard_edge(region, regions)
    if edge == EDGE_LOW:
        static_base = region.end - used
        stack_pointer = region.end
    else:
        static_base = region.origin
        stack_pointer = region.origin

    flip = RegionFlip(
        region=region,
        static_base=static_base,
        static_size=used,
        stack_symbol=stack_symbol,
        stack_pointer=stack_pointer,
        guard=guard,
        guard_edge=edge,
        sections=tuple(
            s.name for s in sorted(sections, key=lambda s: (s.address, s.name)) if s.size > 0
        ),
    )
    if flip.static_size + flip.gap_size != region.length or flip.gap_size <= 0:
        raise RegionOverflow(region.name, region.origin, region.length, used)
    return flip


def compute_flip_plan(report: LinkReport, convention: RuntimeConvention) -> FlipPlan:
    """Compute the flip for every stack-bearing region of ``report``."""
    check_regions_disjoint(report.regions)
    flips: List[RegionFlip] = []
    for region, symbol in select_stack_regions(report, convention):
        flip = flip_region(
            region,
            report.sections_in(region.name),
            report.regions,
            symbol,
            reported_used=report.reported_used(region.name),
        )
        LOGGER.debug(
            "flip %s: statics [0x%X, 0x%X), %s = 0x%X, guard 0x%X (%s edge), gap 0x%X bytes",
            region.name, flip.static_base, flip.static_end, symbol,
            flip.stack_pointer, flip.guard, flip.guard_edge, flip.gap_size,
        )
        flips.append(flip)
    flips.sort(key=lambda f: (f.region.address_space, f.region.origin))
    return FlipPlan(flips=tuple(flips))
