"""Render a flip plan as a linker script override fragment.

The fragment holds exactly one ``MEMORY`` block redefining each flipped
region and one assignment per stack-pointer symbol.  It never repeats the
entry point, output format or user sections; it is passed after every user
script so its definitions are the last ones the linker reads.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import List, Tuple

from flip_engine import EDGE_LOW, FlipPlan, RegionFlip


FRAGMENT_NAME = "stackflip-override.ld"

_FRAGMENT_HEADER = "/* stack guard layout override generated by stackflip; do not edit */\n"

_MEMORY_TEMPLATE = """\
MEMORY
{{
{entries}
}}
"""

_REGION_TEMPLATE = "    {name}{attrs} : ORIGIN = 0x{origin:08X}, LENGTH = 0x{length:X}"

_SYMBOL_TEMPLATE = """\
/* {region}: guard 0x{guard:08X} ({edge} edge), stack gap [0x{gap_start:08X}, 0x{gap_end:08X}) */
{symbol} = 0x{value:08X};
"""


@dataclasses.dataclass(frozen=True)
class ScriptFragment:
    text: str
    regions: Tuple[str, ...]
    symbols: Tuple[str, ...]

    def write_to(self, path: Path) -> Path:
        path = Path(path)
        path.write_text(self.text, encoding="utf-8")
        return path


def _render_region(flip: RegionFlip) -> str:
    region = flip.region
    attrs = " ({})".format(region.attributes) if region.attributes else ""
    return _REGION_TEMPLATE.format(
        name=region.name,
        attrs=attrs,
        origin=flip.static_base,
        length=flip.static_size,
    )


def _render_symbol(flip: RegionFlip) -> str:
    return _SYMBOL_TEMPLATE.format(
        region=flip.region.name,
        guard=flip.guard,
        edge="low" if flip.guard_edge == EDGE_LOW else "high",
        gap_start=flip.gap_start,
        gap_end=flip.gap_end,
        symbol=flip.stack_symbol,
        value=flip.stack_pointer,
    )


def render_fragment(plan: FlipPlan) -> ScriptFragment:
    """Render ``plan``; the same plan always yields byte-identical text."""
    if not plan.flips:
        raise ValueError("cannot render an empty flip plan")

    parts: List[str] = [_FRAGMENT_HEADER, "\n"]
    parts.append(_MEMORY_TEMPLATE.format(entries="\n".join(_render_region(f) for f in plan.flips)))
    for flip in plan.flips:
        parts.append("\n")
        parts.append(_render_symbol(flip))

    return ScriptFragment(
        text="".join(parts),
        regions=tuple(f.region.name for f in plan.flips),
        symbols=tuple(f.stack_symbol for f in plan.flips),
    )
