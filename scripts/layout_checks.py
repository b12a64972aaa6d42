"""Pre-checks consulted before a layout is flipped or a second link runs.

Each check either returns normally or raises a ``FlipError`` subclass that
names the regions, addresses or script locations involved.

Usage from the orchestrator::

    from layout_checks import check_symbol_conflicts, select_stack_regions

    check_symbol_conflicts(convention.symbols(), args, convention.allow_override)
    for region, symbol in select_stack_regions(report, convention):
        ...
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import linker_args
from convention_loader import POLICY_HIGHEST, RuntimeConvention
from flip_errors import ConflictingDefinition, UnsupportedLayout
from memory_map import LinkReport, MemoryRegion

LOGGER = logging.getLogger("stackflip.checks")

# Sections that only ever live in writable memory.
WRITABLE_SECTION_PREFIXES = (".data", ".bss", ".sbss", ".sdata", ".uninit", ".noinit", ".tbss", ".tdata")

_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_INCLUDE_RE = re.compile(r"\bINCLUDE\s+(\"[^\"]+\"|[^\s;]+)")


# ---------------------------------------------------------------------------
# Region checks
# ---------------------------------------------------------------------------

def check_regions_disjoint(regions: Sequence[MemoryRegion]) -> None:
    """Raise UnsupportedLayout when two regions of one address space overlap."""
    for i in range(len(regions)):
        for j in range(i + 1, len(regions)):
            a, b = regions[i], regions[j]
            if a.address_space == b.address_space and a.overlaps(b):
                raise UnsupportedLayout(
                    "memory regions '{}' and '{}' overlap".format(a.name, b.name),
                    {
                        "first": a.name,
                        "first_origin": a.origin,
                        "first_end": a.end,
                        "second": b.name,
                        "second_origin": b.origin,
                        "second_end": b.end,
                    },
                )


def _hosts_writable_data(report: LinkReport, region: MemoryRegion) -> bool:
    return any(
        s.name.startswith(WRITABLE_SECTION_PREFIXES) for s in report.sections_in(region.name)
    )


def stack_region_candidates(report: LinkReport) -> List[MemoryRegion]:
    """Regions that could carry the stack when the descriptor names none.

    Regions declared writable win.  When no region declares attributes at
    all, regions holding writable-data sections are the candidates.
    """
    writable = [r for r in report.regions if r.writable]
    if writable:
        return writable
    return [r for r in report.regions if r.possibly_writable and _hosts_writable_data(report, r)]


def select_stack_regions(
    report: LinkReport, convention: RuntimeConvention
) -> List[Tuple[MemoryRegion, str]]:
    """Resolve the stack-bearing regions and the symbol each one defines."""
    if convention.stack_regions:
        selected: List[Tuple[MemoryRegion, str]] = []
        for rule in convention.stack_regions:
            region = report.region(rule.region)
            if region is None:
                raise UnsupportedLayout(
                    "stack region '{}' is not declared by the link".format(rule.region),
                    {"declared": ", ".join(r.name for r in report.regions)},
                )
            if not region.possibly_writable:
                raise UnsupportedLayout(
                    "stack region '{}' is not writable".format(region.name),
                    {"region": region.name, "attributes": region.attributes},
                )
            selected.append((region, rule.stack_symbol))
        _check_unique_symbols(selected)
        return selected

    candidates = stack_region_candidates(report)
    if not candidates:
        raise UnsupportedLayout(
            "no writable memory region found for the stack",
            {"declared": ", ".join(r.name for r in report.regions)},
        )

    by_space: Dict[str, List[MemoryRegion]] = {}
    for region in candidates:
        by_space.setdefault(region.address_space, []).append(region)

    selected = []
    for space in sorted(by_space):
        regions = by_space[space]
        if len(regions) > 1:
            if convention.region_policy != POLICY_HIGHEST:
                raise UnsupportedLayout(
                    "several writable regions could carry the stack; name one in the config",
                    {"address_space": space, "candidates": ", ".join(r.name for r in regions)},
                )
            chosen = max(regions, key=lambda r: r.origin)
            LOGGER.debug(
                "region policy 'highest' picked %s out of %s",
                chosen.name, ", ".join(r.name for r in regions),
            )
        else:
            chosen = regions[0]
        selected.append((chosen, convention.stack_symbol))
    _check_unique_symbols(selected)
    return selected


def _check_unique_symbols(selected: List[Tuple[MemoryRegion, str]]) -> None:
    owners: Dict[str, str] = {}
    for region, symbol in selected:
        if symbol in owners:
            raise UnsupportedLayout(
                "stack symbol '{}' would be defined for two regions".format(symbol),
                {"symbol": symbol, "first": owners[symbol], "second": region.name},
            )
        owners[symbol] = region.name


# ---------------------------------------------------------------------------
# Symbol conflict checks
# ---------------------------------------------------------------------------

def _definition_re(symbol: str) -> "re.Pattern[str]":
    return re.compile(
        r"(?P<weak>PROVIDE(?:_HIDDEN)?\s*\(\s*)?(?<![\w.$])" + re.escape(symbol) + r"\s*=(?!=)"
    )


def _resolve_script(name: str, base: Optional[Path], cwd: Path, dirs: Sequence[str]) -> Optional[Path]:
    candidate = Path(name)
    if candidate.is_absolute():
        return candidate if candidate.is_file() else None
    roots: List[Path] = []
    if base is not None:
        roots.append(base)
    roots.append(cwd)
    roots.extend(cwd / d for d in dirs)
    for root in roots:
        path = root / candidate
        if path.is_file():
            return path
    return None


def _scan_script(
    path: Path,
    patterns: Dict[str, "re.Pattern[str]"],
    cwd: Path,
    dirs: Sequence[str],
    seen: Set[Path],
    found: Dict[str, str],
) -> None:
    resolved = path.resolve()
    if resolved in seen:
        return
    seen.add(resolved)
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        LOGGER.debug("cannot read linker script %s: %s", path, exc)
        return

    # Blank out comments but keep newlines so line numbers stay right.
    text = _COMMENT_RE.sub(lambda m: re.sub(r"[^\n]", " ", m.group(0)), text)

    for symbol, pattern in patterns.items():
        if symbol in found:
            continue
        for match in pattern.finditer(text):
            if match.group("weak"):
                continue
            line = text.count("\n", 0, match.start()) + 1
            found[symbol] = "{}:{}".format(path, line)
            break

    for match in _INCLUDE_RE.finditer(text):
        name = match.group(1).strip('"')
        included = _resolve_script(name, path.parent, cwd, dirs)
        if included is None:
            LOGGER.debug("INCLUDE %s from %s not found; skipped", name, path)
            continue
        _scan_script(included, patterns, cwd, dirs, seen, found)


def find_symbol_definitions(
    symbols: Sequence[str], args: Sequence[str], cwd: Optional[Path] = None
) -> Dict[str, str]:
    """Map each symbol with a hard definition in user input to its location.

    Looks at ``--defsym`` options and at every script named on the command
    line, following ``INCLUDE`` directives.  ``PROVIDE`` definitions are
    weak and ignored.
    """
    cwd = cwd or Path.cwd()
    wanted = set(symbols)
    found: Dict[str, str] = {}

    for symbol, _expr in linker_args.defsym_assignments(args):
        if symbol in wanted and symbol not in found:
            found[symbol] = "--defsym {}".format(symbol)

    patterns = {symbol: _definition_re(symbol) for symbol in sorted(wanted)}
    dirs = linker_args.search_dirs(args)
    seen: Set[Path] = set()
    for name in linker_args.script_paths(args):
        path = _resolve_script(name, None, cwd, dirs)
        if path is None:
            LOGGER.debug("linker script %s not found; skipped", name)
            continue
        _scan_script(path, patterns, cwd, dirs, seen, found)
    return found


def check_symbol_conflicts(
    symbols: Sequence[str],
    args: Sequence[str],
    allow_override: bool = False,
    cwd: Optional[Path] = None,
) -> Dict[str, str]:
    """Raise ConflictingDefinition if user input already defines a flipped symbol.

    With ``allow_override`` the conflicts are logged and returned instead;
    the fragment is layered last, so its definitions take effect.
    """
    found = find_symbol_definitions(symbols, args, cwd)
    if found and not allow_override:
        symbol = sorted(found)[0]
        raise ConflictingDefinition(symbol, found[symbol])
    for symbol, location in sorted(found.items()):
        LOGGER.warning("overriding '%s' defined at %s", symbol, location)
    return found
