"""Two-pass link orchestration.

Pass 1 runs the wrapped link tool exactly as the caller asked, plus the
memory-report flags.  Its report is parsed, flipped and rendered into a
script fragment; pass 2 re-runs the tool with the fragment appended after
every user argument.  Both passes forward their output verbatim, and a
failing pass 1 is reported with its own exit status without a second
attempt.

Usage as library::

    from convention_loader import load_config
    from link_orchestrator import LinkOrchestrator

    orchestrator = LinkOrchestrator(load_config("stackflip.yaml"))
    status = orchestrator.run(["-o", "fw.elf", "main.o", "-T", "link.ld"])
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import signal
import subprocess
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Sequence

import linker_args
from convention_loader import WrapperConfig
from flip_engine import FlipPlan, compute_flip_plan
from flip_errors import (
    EXIT_OK,
    FlipError,
    LayoutVerificationError,
    LinkInterrupted,
    SubprocessFailure,
    SubprocessTimeout,
    format_command,
)
from layout_checks import check_symbol_conflicts
from memory_map import load_link_report
from output_check import is_elf, verify_linked_output
from script_synth import FRAGMENT_NAME, ScriptFragment, render_fragment

LOGGER = logging.getLogger("stackflip.orchestrator")

# Signals that should take the in-flight linker down with us.
_FORWARDED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGHUP") if hasattr(signal, name)
)


@dataclasses.dataclass
class LinkStepResult:
    command: List[str]
    returncode: int
    stdout: bytes
    stderr: bytes


@dataclasses.dataclass
class FlipOutcome:
    """Everything one successful wrapped link produced."""

    pass1: LinkStepResult
    pass2: LinkStepResult
    plan: FlipPlan
    fragment: ScriptFragment
    verified_sections: List[str] = dataclasses.field(default_factory=list)


Runner = Callable[[Sequence[str], Optional[float]], LinkStepResult]


# ---------------------------------------------------------------------------
# Scoped subprocess execution
# ---------------------------------------------------------------------------

@contextlib.contextmanager
def _raise_on_termination() -> Iterator[None]:
    """Turn SIGTERM/SIGHUP into LinkInterrupted while a child runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _frame: Any) -> None:
        raise LinkInterrupted(signum)

    previous = {}
    for signum in _FORWARDED_SIGNALS:
        previous[signum] = signal.signal(signum, _handler)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


@contextlib.contextmanager
def scoped_process(command: Sequence[str]) -> Iterator[subprocess.Popen]:
    """Start ``command`` and guarantee it is dead and reaped when the block exits."""
    try:
        proc = subprocess.Popen(
            list(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise SubprocessFailure(command, None, reason=str(exc)) from exc

    with proc:
        try:
            with _raise_on_termination():
                yield proc
        finally:
            if proc.poll() is None:
                LOGGER.debug("killing pid %d", proc.pid)
                proc.kill()
                proc.wait()


def run_link_step(command: Sequence[str], timeout: Optional[float] = None) -> LinkStepResult:
    """Run one link invocation to completion and capture both streams."""
    LOGGER.debug("running: %s", format_command(command))
    with scoped_process(command) as proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise SubprocessTimeout(command, timeout or 0.0) from exc
    return LinkStepResult(
        command=list(command),
        returncode=proc.returncode,
        stdout=stdout or b"",
        stderr=stderr or b"",
    )


def _binary_stream(stream: Any) -> BinaryIO:
    return getattr(stream, "buffer", stream)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class LinkOrchestrator:
    """Drives the two link passes for one invocation."""

    def __init__(
        self,
        config: WrapperConfig,
        stdout: Optional[Any] = None,
        stderr: Optional[Any] = None,
        runner: Runner = run_link_step,
        cwd: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.stdout = _binary_stream(stdout if stdout is not None else sys.stdout)
        self.stderr = _binary_stream(stderr if stderr is not None else sys.stderr)
        self.runner = runner
        self.cwd = cwd

    def _forward(self, result: LinkStepResult) -> None:
        if result.stdout:
            self.stdout.write(result.stdout)
            self.stdout.flush()
        if result.stderr:
            self.stderr.write(result.stderr)
            self.stderr.flush()

    def _run_pass(self, command: List[str]) -> LinkStepResult:
        result = self.runner(command, self.config.link.timeout)
        self._forward(result)
        if result.returncode != 0:
            raise SubprocessFailure(command, result.returncode)
        return result

    def _script_args(self, path: Path) -> List[str]:
        flag = self.config.link.script_flag
        if flag:
            return [flag, str(path)]
        return [str(path)]

    def plan(self, report_text: str, args: Sequence[str]) -> FlipPlan:
        """Validate, parse and flip; raises before any second link is attempted."""
        conv = self.config.convention
        check_symbol_conflicts(conv.symbols(), args, conv.allow_override, cwd=self.cwd)
        report = load_link_report(report_text, alignment_cap=self.config.link.alignment_cap)
        return compute_flip_plan(report, conv)

    def link(self, args: Sequence[str]) -> FlipOutcome:
        """Run both passes.

        Raises:
            SubprocessFailure: A pass exited nonzero (its status is kept).
            SubprocessTimeout: A pass exceeded the configured timeout.
            FlipError: Parsing, flipping or verification failed.
        """
        args = list(args)
        settings = self.config.link

        pass1 = self._run_pass(settings.tool + args + settings.report_flags)

        plan = self.plan(pass1.stdout.decode("utf-8", errors="replace"), args)
        fragment = render_fragment(plan)

        with tempfile.TemporaryDirectory(prefix="stackflip_") as tmp:
            script = fragment.write_to(Path(tmp) / FRAGMENT_NAME)
            pass2 = self._run_pass(settings.tool + args + self._script_args(script))

        outcome = FlipOutcome(pass1=pass1, pass2=pass2, plan=plan, fragment=fragment)
        if settings.verify_output:
            outcome.verified_sections = self._verify(args, plan)
        return outcome

    def _verify(self, args: Sequence[str], plan: FlipPlan) -> List[str]:
        output = Path(linker_args.output_path(args) or linker_args.DEFAULT_OUTPUT)
        if self.cwd is not None and not output.is_absolute():
            output = self.cwd / output
        if not is_elf(output):
            LOGGER.debug("output %s is not an ELF file; verification skipped", output)
            return []
        try:
            return verify_linked_output(output, plan)
        except LayoutVerificationError:
            # Never leave an unsafe binary that looks successfully linked.
            try:
                output.unlink()
            except OSError as exc:
                LOGGER.error("cannot remove unsafe output %s: %s", output, exc)
            raise

    def run(self, args: Sequence[str]) -> int:
        """Run both passes and map the result to a process exit status."""
        try:
            self.link(args)
        except SubprocessFailure as exc:
            if exc.returncode is None:
                print("stackflip: error: {}".format(exc.describe()), file=sys.stderr)
            else:
                print("stackflip: {}".format(exc.describe()), file=sys.stderr)
            return exc.exit_code
        except FlipError as exc:
            print("stackflip: error: {}".format(exc.describe()), file=sys.stderr)
            return exc.exit_code
        return EXIT_OK
