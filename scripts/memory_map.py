#!/usr/bin/env python3
"""Parser for the memory report printed by a GNU-ld-compatible linker.

The first link pass runs with ``--print-map`` (and, when the tool supports
it, ``--print-memory-usage``).  This module turns that text into an
immutable ``LinkReport``: the declared memory regions, the output sections
placed in them, and the per-region usage figures the linker itself reports.

The report grammar belongs to the external tool and changes between
releases, so parsing is tolerant of column widths, address widths, wrapped
section names and optional columns, but it never guesses: a table it does
not recognize produces a ``ParseError`` carrying the offending line.

Usage as library::

    from memory_map import parse_memory_report

    outcome = parse_memory_report(proc.stdout)
    if not outcome.ok:
        print(outcome.error.describe())
    report = outcome.unwrap()

Usage as CLI (for debugging)::

    python3 scripts/memory_map.py build/firmware.map
"""

from __future__ import annotations

import dataclasses
import json
import re
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from flip_errors import ParseError


KIND_RAM = "ram"
KIND_ROM = "rom"
KIND_UNKNOWN = "unknown"

DEFAULT_ADDRESS_SPACE = "default"
DEFAULT_ALIGNMENT_CAP = 8
DEFAULT_REGION_NAME = "*default*"

# Output sections that never occupy target memory.
NON_ALLOC_PREFIXES = (
    ".debug",
    ".comment",
    ".stab",
    ".ARM.attributes",
    ".riscv.attributes",
    ".gnu.attributes",
    ".note.gnu.gold-version",
    ".symtab",
    ".strtab",
    ".shstrtab",
    ".line",
)

_UNIT_SCALE = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}

_HEX = r"0[xX][0-9a-fA-F]+"

_MEMORY_TITLE_RE = re.compile(r"^\s*Memory Configuration\s*$", re.IGNORECASE)
_MEMORY_HEADER_RE = re.compile(
    r"^\s*Name\s+Origin\s+Length(?:\s+Attributes)?\s*$", re.IGNORECASE
)
_MEMORY_ROW_RE = re.compile(
    r"^\s*(?P<name>\S+)\s+(?P<origin>{hex})\s+(?P<length>{hex})(?:\s+(?P<attrs>\S.*?))?\s*$".format(hex=_HEX)
)
_MAP_TITLE_RE = re.compile(r"^\s*Linker script and memory map\s*$", re.IGNORECASE)
_SECTION_RE = re.compile(
    r"^(?P<name>\S+)(?:\s+(?P<addr>{hex})\s+(?P<size>{hex})(?:\s.*)?)?$".format(hex=_HEX)
)
_SECTION_CONT_RE = re.compile(r"^\s+(?P<addr>{hex})\s+(?P<size>{hex})(?:\s.*)?$".format(hex=_HEX))
_MAP_END_RE = re.compile(r"^(?:OUTPUT\(|Cross Reference Table)")
_USAGE_TITLE_RE = re.compile(
    r"^\s*Memory region\s+Used Size\s+Region Size\s+%age Used\s*$", re.IGNORECASE
)
_USAGE_ROW_RE = re.compile(
    r"^\s*(?P<name>[^\s:]+):\s+(?P<used>\d+)\s*(?P<used_unit>[KMG]?B)\s+"
    r"(?P<size>\d+)\s*(?P<size_unit>[KMG]?B)\s+(?P<pct>[\d.]+)%\s*$"
)
_USAGE_ROW_START_RE = re.compile(r"^\s*[^\s:]+:\s")


# ---------------------------------------------------------------------------
# Report data model
# ---------------------------------------------------------------------------

def classify_attributes(attributes: str) -> str:
    """Map a GNU ld attribute string to a region kind."""
    if not attributes:
        return KIND_UNKNOWN
    granted = attributes.split("!", 1)[0]
    if "w" in granted.lower():
        return KIND_RAM
    return KIND_ROM


@dataclasses.dataclass(frozen=True)
class MemoryRegion:
    name: str
    origin: int
    length: int
    attributes: str = ""
    kind: str = KIND_UNKNOWN
    address_space: str = DEFAULT_ADDRESS_SPACE

    def __post_init__(self) -> None:
        if self.length <= 0:
            raise ValueError(
                "region '{}' must have a positive length, got {}".format(self.name, self.length)
            )
        if self.origin < 0:
            raise ValueError("region '{}' has a negative origin".format(self.name))

    @property
    def end(self) -> int:
        """Exclusive end address."""
        return self.origin + self.length

    @property
    def writable(self) -> bool:
        return self.kind == KIND_RAM

    @property
    def possibly_writable(self) -> bool:
        # Regions declared without attributes accept any section.
        return self.kind in (KIND_RAM, KIND_UNKNOWN)

    def contains(self, address: int) -> bool:
        return self.origin <= address < self.end

    def overlaps(self, other: "MemoryRegion") -> bool:
        return self.origin < other.end and other.origin < self.end


@dataclasses.dataclass(frozen=True)
class SectionUsage:
    name: str
    address: int
    size: int
    alignment: int = 1
    region: Optional[str] = None

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError("section '{}' has a negative size".format(self.name))
        if self.alignment <= 0 or self.alignment & (self.alignment - 1):
            raise ValueError(
                "section '{}' alignment must be a power of two, got {}".format(self.name, self.alignment)
            )

    @property
    def end(self) -> int:
        return self.address + self.size


@dataclasses.dataclass(frozen=True)
class RegionUsage:
    """One row of the linker's own memory usage table."""

    name: str
    used: int
    size: int


@dataclasses.dataclass(frozen=True)
class LinkReport:
    regions: Tuple[MemoryRegion, ...]
    sections: Tuple[SectionUsage, ...] = ()
    reported_usage: Tuple[RegionUsage, ...] = ()

    def region(self, name: str) -> Optional[MemoryRegion]:
        for region in self.regions:
            if region.name == name:
                return region
        return None

    def sections_in(self, name: str) -> List[SectionUsage]:
        return [s for s in self.sections if s.region == name]

    def used_bytes(self, name: str) -> int:
        return sum(s.size for s in self.sections_in(name))

    def reported_used(self, name: str) -> Optional[int]:
        for usage in self.reported_usage:
            if usage.name == name:
                return usage.used
        return None


@dataclasses.dataclass(frozen=True)
class ParseOutcome:
    """Tagged parse result: exactly one of ``report`` / ``error`` is set."""

    report: Optional[LinkReport] = None
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> LinkReport:
        if self.error is not None:
            raise self.error
        assert self.report is not None
        return self.report


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _infer_alignment(address: int, cap: int) -> int:
    if address == 0:
        return cap
    return min(address & -address, cap)


def _is_allocated(name: str) -> bool:
    if name == "/DISCARD/":
        return False
    return not name.startswith(NON_ALLOC_PREFIXES)


def _find_line(lines: List[str], pattern: "re.Pattern[str]", start: int = 0) -> Optional[int]:
    for index in range(start, len(lines)):
        if pattern.match(lines[index]):
            return index
    return None


def _first_nonblank(lines: List[str]) -> str:
    for line in lines:
        if line.strip():
            return line
    return ""


def _parse_regions(lines: List[str]) -> Tuple[List[MemoryRegion], int]:
    """Parse the Memory Configuration table; return regions and the next line index."""
    title = _find_line(lines, _MEMORY_TITLE_RE)
    if title is None:
        raise ParseError("memory configuration table not found", line=_first_nonblank(lines))

    index = title + 1
    while index < len(lines) and not lines[index].strip():
        index += 1
    if index >= len(lines):
        raise ParseError("memory configuration table is empty", line=lines[title], line_number=title + 1)
    if not _MEMORY_HEADER_RE.match(lines[index]):
        raise ParseError(
            "unrecognized memory configuration header", line=lines[index], line_number=index + 1
        )

    regions: List[MemoryRegion] = []
    seen: Dict[str, int] = {}
    index += 1
    while index < len(lines) and lines[index].strip():
        line = lines[index]
        match = _MEMORY_ROW_RE.match(line)
        if match is None:
            raise ParseError("unrecognized memory region row", line=line, line_number=index + 1)
        name = match.group("name")
        if name != DEFAULT_REGION_NAME:
            if name in seen:
                raise ParseError(
                    "memory region '{}' declared twice".format(name), line=line, line_number=index + 1
                )
            attributes = (match.group("attrs") or "").replace(" ", "")
            try:
                region = MemoryRegion(
                    name=name,
                    origin=int(match.group("origin"), 16),
                    length=int(match.group("length"), 16),
                    attributes=attributes,
                    kind=classify_attributes(attributes),
                )
            except ValueError as exc:
                raise ParseError(str(exc), line=line, line_number=index + 1) from exc
            seen[name] = index
            regions.append(region)
        index += 1

    if not regions:
        raise ParseError("no memory regions declared", line=lines[title], line_number=title + 1)
    return regions, index


def _bind_region(address: int, regions: List[MemoryRegion]) -> Optional[str]:
    for region in regions:
        if region.contains(address):
            return region.name
    return None


def _parse_sections(
    lines: List[str], start: int, regions: List[MemoryRegion], alignment_cap: int
) -> List[SectionUsage]:
    title = _find_line(lines, _MAP_TITLE_RE, start)
    if title is None:
        raise ParseError(
            "section map ('Linker script and memory map') not found",
            line=lines[start] if start < len(lines) else "",
            line_number=start + 1,
        )

    sections: List[SectionUsage] = []
    index = title + 1
    while index < len(lines):
        line = lines[index]
        if _MAP_END_RE.match(line):
            break
        if not line or line[0].isspace():
            index += 1
            continue
        match = _SECTION_RE.match(line.rstrip())
        if match is None:
            index += 1
            continue

        name = match.group("name")
        addr_text = match.group("addr")
        size_text = match.group("size")
        if addr_text is None:
            # Long names push address and size onto the next line.
            following = lines[index + 1] if index + 1 < len(lines) else ""
            cont = _SECTION_CONT_RE.match(following)
            if cont is None:
                index += 1
                continue
            addr_text = cont.group("addr")
            size_text = cont.group("size")
            index += 1

        index += 1
        if not _is_allocated(name):
            continue
        address = int(addr_text, 16)
        sections.append(
            SectionUsage(
                name=name,
                address=address,
                size=int(size_text, 16),
                alignment=_infer_alignment(address, alignment_cap),
                region=_bind_region(address, regions),
            )
        )
    return sections


def _parse_usage_table(lines: List[str]) -> List[RegionUsage]:
    title = _find_line(lines, _USAGE_TITLE_RE)
    if title is None:
        return []

    usage: List[RegionUsage] = []
    for index in range(title + 1, len(lines)):
        line = lines[index]
        if not line.strip():
            break
        match = _USAGE_ROW_RE.match(line)
        if match is None:
            if _USAGE_ROW_START_RE.match(line):
                raise ParseError("unrecognized memory usage row", line=line, line_number=index + 1)
            break
        usage.append(
            RegionUsage(
                name=match.group("name"),
                used=int(match.group("used")) * _UNIT_SCALE[match.group("used_unit")],
                size=int(match.group("size")) * _UNIT_SCALE[match.group("size_unit")],
            )
        )
    return usage


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def parse_memory_report(text: str, alignment_cap: int = DEFAULT_ALIGNMENT_CAP) -> ParseOutcome:
    """Parse a link report without raising.

    Args:
        text: Captured standard output of the reporting link pass.
        alignment_cap: Upper bound for alignment inferred from addresses.

    Returns:
        A ``ParseOutcome`` holding either the ``LinkReport`` or the
        ``ParseError`` that stopped parsing.
    """
    lines = text.splitlines()
    try:
        regions, after_regions = _parse_regions(lines)
        sections = _parse_sections(lines, after_regions, regions, alignment_cap)
        usage = _parse_usage_table(lines)
    except ParseError as exc:
        return ParseOutcome(error=exc)
    return ParseOutcome(
        report=LinkReport(
            regions=tuple(regions),
            sections=tuple(sections),
            reported_usage=tuple(usage),
        )
    )


def load_link_report(text: str, alignment_cap: int = DEFAULT_ALIGNMENT_CAP) -> LinkReport:
    """Parse a link report, raising ``ParseError`` on unrecognized input."""
    return parse_memory_report(text, alignment_cap=alignment_cap).unwrap()


# ---------------------------------------------------------------------------
# CLI for debugging
# ---------------------------------------------------------------------------

def main() -> int:
    if len(sys.argv) < 2:
        print("Usage: python3 scripts/memory_map.py <linker-map.txt>", file=sys.stderr)
        return 1

    outcome = parse_memory_report(Path(sys.argv[1]).read_text(encoding="utf-8", errors="replace"))
    if not outcome.ok:
        assert outcome.error is not None
        print("parse error: {}".format(outcome.error.describe()), file=sys.stderr)
        return outcome.error.exit_code

    report = outcome.unwrap()
    info = {
        region.name: {
            "origin": "0x{:08X}".format(region.origin),
            "length": "0x{:X}".format(region.length),
            "kind": region.kind,
            "used": "0x{:X}".format(report.used_bytes(region.name)),
            "sections": [s.name for s in report.sections_in(region.name)],
        }
        for region in report.regions
    }
    print(json.dumps(info, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
