"""
Pytest configuration and fixtures for stackflip tests.
"""
import json
import struct
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = Path(__file__).resolve().parent / "data"

sys.path.insert(0, str(REPO_ROOT / "scripts"))

from script_synth import FRAGMENT_NAME  # noqa: E402


def build_map(
    regions: Sequence[Tuple[str, int, int, str]],
    sections: Sequence[Tuple[str, int, int]] = (),
    usage: Optional[Sequence[Tuple[str, str, str]]] = None,
) -> str:
    """Render a minimal GNU ld map: (name, origin, length, attrs) regions and
    (name, address, size) output sections."""
    lines = ["Memory Configuration", "", "Name             Origin             Length             Attributes"]
    for name, origin, length, attrs in regions:
        lines.append("{:<16} 0x{:08x}         0x{:08x}         {}".format(name, origin, length, attrs).rstrip())
    lines.append("*default*        0x00000000         0xffffffff")
    lines += ["", "Linker script and memory map", ""]
    for name, address, size in sections:
        lines.append("{:<15} 0x{:08x} {:>8}".format(name, address, hex(size)))
        lines.append(" *({})".format(name))
        lines.append("")
    lines.append("OUTPUT(a.out elf32-littlearm)")
    if usage is not None:
        lines += ["", "Memory region         Used Size  Region Size  %age Used"]
        for name, used, size in usage:
            lines.append("{:>16}: {:>12} {:>12}      0.00%".format(name, used, size))
    return "\n".join(lines) + "\n"


SHT_STRTAB = 3
SHT_NOBITS = 8
SHF_WRITE = 0x1
SHF_ALLOC = 0x2


def build_elf(sections: Sequence[Tuple[str, int, int, int]]) -> bytes:
    """Build a little-endian ELF32 image holding only section headers.

    ``sections`` are (name, address, size, flags); every section is NOBITS
    so no contents are needed.
    """
    names = [name for name, _addr, _size, _flags in sections] + [".shstrtab"]
    strtab = b"\0"
    offsets = {}
    for name in names:
        offsets[name] = len(strtab)
        strtab += name.encode("ascii") + b"\0"

    header_size = 52
    shoff = header_size + len(strtab)
    shoff += (-shoff) % 4
    shnum = len(sections) + 2

    ident = b"\x7fELF" + bytes([1, 1, 1, 0]) + bytes(8)
    header = ident + struct.pack(
        "<HHIIIIIHHHHHH",
        2,  # ET_EXEC
        40,  # EM_ARM
        1,
        0x08000000,
        0,
        shoff,
        0x05000000,
        header_size,
        32,
        0,
        40,
        shnum,
        shnum - 1,
    )
    body = header + strtab + bytes(shoff - header_size - len(strtab))

    table = bytes(40)
    for name, address, size, flags in sections:
        table += struct.pack("<IIIIIIIIII", offsets[name], SHT_NOBITS, flags, address, shoff, size, 0, 0, 4, 0)
    table += struct.pack(
        "<IIIIIIIIII", offsets[".shstrtab"], SHT_STRTAB, 0, 0, header_size, len(strtab), 0, 0, 1, 0
    )
    return body + table


# Sections of the stm32 example after a successful flip of RAM.
FLIPPED_STM32_SECTIONS = [
    (".isr_vector", 0x08000000, 0x188, SHF_ALLOC),
    (".text", 0x08000188, 0x1F00, SHF_ALLOC),
    (".data", 0x2000D000, 0x100, SHF_ALLOC | SHF_WRITE),
    (".bss", 0x2000D100, 0x2300, SHF_ALLOC | SHF_WRITE),
    ("._user_heap_stack", 0x2000F400, 0xC00, SHF_ALLOC | SHF_WRITE),
    (".comment", 0x0, 0x49, 0),
]


@pytest.fixture
def stm32_map_text() -> str:
    return (DATA_DIR / "stm32f4_blinky.map").read_text(encoding="utf-8")


_FAKE_LINKER = textwrap.dedent(
    """\
    import json
    import os
    import shutil
    import sys
    import time

    args = sys.argv[1:]
    with open({pids!r}, "a", encoding="utf-8") as f:
        f.write("{{}}\\n".format(os.getpid()))
    with open({log!r}, "a", encoding="utf-8") as f:
        f.write(json.dumps(args) + "\\n")
    time.sleep({sleep!r})
    if "--print-map" in args:
        with open({map_path!r}, "r", encoding="utf-8") as f:
            sys.stdout.write(f.read())
        sys.stderr.write("ld: warning: pass one\\n")
        sys.exit({pass1_status!r})
    for index, arg in enumerate(args[:-1]):
        if arg == "-T" and args[index + 1].endswith({fragment!r}):
            shutil.copyfile(args[index + 1], {fragment_copy!r})
    sys.stdout.write("pass two\\n")
    sys.exit({pass2_status!r})
    """
)


class FakeLinker:
    """A throwaway Python script standing in for the wrapped link tool."""

    def __init__(self, script: Path, log: Path, fragment_copy: Path) -> None:
        self.script = script
        self.log = log
        self.fragment_copy = fragment_copy
        self.pid_log = log.with_name("pids.txt")

    @property
    def command(self) -> List[str]:
        return [sys.executable, str(self.script)]

    def invocations(self) -> List[List[str]]:
        if not self.log.exists():
            return []
        return [json.loads(line) for line in self.log.read_text(encoding="utf-8").splitlines() if line]

    def pids(self) -> List[int]:
        if not self.pid_log.exists():
            return []
        return [int(line) for line in self.pid_log.read_text(encoding="utf-8").split()]

    def fragment_text(self) -> str:
        return self.fragment_copy.read_text(encoding="utf-8")


@pytest.fixture
def fake_linker(tmp_path, stm32_map_text):
    """Factory: fake_linker(map_text=..., pass1_status=0, pass2_status=0, sleep=0.0)."""
    counter = [0]

    def make(
        map_text: Optional[str] = None,
        pass1_status: int = 0,
        pass2_status: int = 0,
        sleep: float = 0.0,
    ) -> FakeLinker:
        counter[0] += 1
        base = tmp_path / "fake_ld_{}".format(counter[0])
        base.mkdir()
        map_path = base / "report.map"
        map_path.write_text(stm32_map_text if map_text is None else map_text, encoding="utf-8")
        linker = FakeLinker(base / "fake_ld.py", base / "argv.jsonl", base / "fragment.ld")
        linker.script.write_text(
            _FAKE_LINKER.format(
                log=str(linker.log),
                pids=str(linker.pid_log),
                sleep=sleep,
                map_path=str(map_path),
                pass1_status=pass1_status,
                fragment=FRAGMENT_NAME,
                fragment_copy=str(linker.fragment_copy),
                pass2_status=pass2_status,
            ),
            encoding="utf-8",
        )
        return linker

    return make
