"""Post-link sanity check of the flipped ELF.

After the second link the output is read back (never modified) to confirm
the linker did what the fragment asked: every allocated section that lands
in a flipped region must sit inside the relocated static span, and every
section the plan relocated must still exist.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile

from flip_engine import FlipPlan
from flip_errors import LayoutVerificationError

LOGGER = logging.getLogger("stackflip.verify")

ELF_MAGIC = b"\x7fELF"


def is_elf(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(4) == ELF_MAGIC
    except OSError:
        return False


def _allocated_sections(path: Path) -> Dict[str, Tuple[int, int]]:
    sections: Dict[str, Tuple[int, int]] = {}
    with open(path, "rb") as f:
        try:
            elf = ELFFile(f)
            for section in elf.iter_sections():
                if not section["sh_flags"] & SH_FLAGS.SHF_ALLOC:
                    continue
                if section["sh_size"] == 0:
                    continue
                sections[section.name] = (section["sh_addr"], section["sh_size"])
        except ELFError as exc:
            raise LayoutVerificationError(
                "cannot read linked output", {"output": str(path), "reason": str(exc)}
            ) from exc
    return sections


def verify_linked_output(path: Path, plan: FlipPlan) -> List[str]:
    """Check ``path`` against ``plan``; return the names of checked sections.

    Raises:
        LayoutVerificationError: A section overlaps the stack gap or spills
            out of the static span, or a relocated section disappeared.
    """
    sections = _allocated_sections(Path(path))
    checked: List[str] = []
    for flip in plan.flips:
        region = flip.region
        for name, (start, size) in sorted(sections.items(), key=lambda item: item[1]):
            end = start + size
            if end <= region.origin or start >= region.end:
                continue
            if start < flip.static_base or end > flip.static_end:
                raise LayoutVerificationError(
                    "section '{}' is outside the relocated static span of '{}'".format(name, region.name),
                    {
                        "section": name,
                        "start": start,
                        "end": end,
                        "static_base": flip.static_base,
                        "static_end": flip.static_end,
                    },
                )
            checked.append(name)

        present = set(sections)
        missing = [name for name in flip.sections if name not in present]
        if missing:
            raise LayoutVerificationError(
                "sections disappeared in the second link",
                {"region": region.name, "missing": ", ".join(missing)},
            )
    LOGGER.debug("verified %d section(s) in %s", len(checked), path)
    return checked
