"""Read-only inspection of a pass-through linker argument vector.

The wrapper forwards the caller's arguments untouched; these helpers only
look at them to find the user's linker scripts, search paths, ``--defsym``
assignments and the output file.  Compiler-driver forms such as
``-Wl,-T,memory.x`` are expanded before inspection.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

DEFAULT_OUTPUT = "a.out"

# ``-Ttext=ORG`` and friends set section addresses; they are not scripts.
_T_SECTION_OPTIONS = ("text", "data", "bss", "rodata-segment", "ldata-segment")


def expand_driver_args(args: Sequence[str]) -> List[str]:
    """Split ``-Wl,a,b`` / ``-Xlinker a`` into the arguments the linker sees."""
    expanded: List[str] = []
    it = iter(args)
    for arg in it:
        if arg.startswith("-Wl,"):
            expanded.extend(part for part in arg[4:].split(",") if part)
        elif arg == "-Xlinker":
            nxt = next(it, None)
            if nxt is not None:
                expanded.append(nxt)
        else:
            expanded.append(arg)
    return expanded


def _long_forms(long: str) -> Tuple[str, ...]:
    # ld takes long options with one dash too, except those starting with 'o'.
    if not long:
        return ()
    if long.startswith("--o"):
        return (long,)
    return (long, long[1:])


def _match_option(arg: str, short: str, long: str) -> Tuple[bool, Optional[str]]:
    """Return (matched, attached_value) for one argument."""
    for form in _long_forms(long):
        if arg == form:
            return True, None
        if arg.startswith(form + "="):
            return True, arg[len(form) + 1:]
    if short and arg == short:
        return True, None
    if short and arg.startswith(short) and not arg.startswith("--"):
        return True, arg[len(short):]
    return False, None


def _option_values(args: Sequence[str], short: str, long: str) -> List[str]:
    """Collect values of an option given as ``-X v``, ``-Xv``, ``--xx=v`` or ``--xx v``."""
    values: List[str] = []
    expanded = expand_driver_args(args)
    index = 0
    while index < len(expanded):
        matched, value = _match_option(expanded[index], short, long)
        if matched and value is None:
            if index + 1 < len(expanded):
                value = expanded[index + 1]
            index += 1
        if matched and value is not None:
            values.append(value)
        index += 1
    return values


def script_paths(args: Sequence[str]) -> List[str]:
    paths = []
    for value in _option_values(args, "-T", "--script"):
        if value.startswith(_T_SECTION_OPTIONS):
            continue
        paths.append(value)
    return paths


def search_dirs(args: Sequence[str]) -> List[str]:
    return _option_values(args, "-L", "--library-path")


def defsym_assignments(args: Sequence[str]) -> List[Tuple[str, str]]:
    """Return ``(symbol, expression)`` pairs from ``--defsym`` / ``-defsym`` options."""
    pairs: List[Tuple[str, str]] = []
    for value in _option_values(args, "", "--defsym"):
        symbol, sep, expr = value.partition("=")
        if sep:
            pairs.append((symbol.strip(), expr.strip()))
    return pairs


def output_path(args: Sequence[str]) -> Optional[str]:
    """Return the value of the last ``-o`` option, or ``None`` when absent."""
    values = _option_values(args, "-o", "--output")
    if not values:
        return None
    return values[-1]
