"""Error taxonomy for the stack-guard link wrapper.

Every fatal condition the wrapper can raise derives from ``FlipError`` and
carries a reserved exit status, so the command-line entry point can map an
exception straight to a process exit code.  Exit statuses of the wrapped
link tool itself are never remapped: a ``SubprocessFailure`` with a known
return code forwards that code unchanged.
"""

from __future__ import annotations

import shlex
from typing import Any, Dict, Optional, Sequence


EXIT_OK = 0
EXIT_PARSE_ERROR = 81
EXIT_REGION_OVERFLOW = 82
EXIT_UNSUPPORTED_LAYOUT = 83
EXIT_CONFLICTING_DEFINITION = 84
EXIT_SUBPROCESS_TIMEOUT = 85
EXIT_CONFIG_ERROR = 86
EXIT_VERIFICATION_FAILED = 87
EXIT_LAUNCH_FAILURE = 127
EXIT_SIGNAL_BASE = 128


def format_command(command: Sequence[str]) -> str:
    return shlex.join(str(part) for part in command)


def _format_detail(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        return "0x{:X}".format(value)
    return str(value)


class FlipError(Exception):
    """Base class for every fatal wrapper error.

    Attributes:
        message: Human-readable summary.
        details: Context for diagnosis (region names, addresses, sizes).
    """

    kind = "flip_error"
    exit_code = 1

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def describe(self) -> str:
        if not self.details:
            return self.message
        parts = ["{}={}".format(key, _format_detail(value)) for key, value in self.details.items()]
        return "{} ({})".format(self.message, ", ".join(parts))


class ParseError(FlipError):
    """The memory report did not match any recognized layout."""

    kind = "parse_error"
    exit_code = EXIT_PARSE_ERROR

    def __init__(self, message: str, line: Optional[str] = None, line_number: Optional[int] = None) -> None:
        self.line = line
        self.line_number = line_number
        details: Dict[str, Any] = {}
        if line_number is not None:
            details["line_number"] = str(line_number)
        if line is not None:
            details["line"] = repr(line)
        super().__init__(message, details)


class RegionOverflow(FlipError):
    """Static data already fills (or exceeds) the stack-bearing region."""

    kind = "region_overflow"
    exit_code = EXIT_REGION_OVERFLOW

    def __init__(self, region: str, origin: int, length: int, used: int) -> None:
        self.region = region
        self.origin = origin
        self.length = length
        self.used = used
        super().__init__(
            "static data in region '{}' leaves no room for the stack".format(region),
            {"region": region, "origin": origin, "length": length, "used": used},
        )


class UnsupportedLayout(FlipError):
    kind = "unsupported_layout"
    exit_code = EXIT_UNSUPPORTED_LAYOUT


class ConflictingDefinition(FlipError):
    """User script content already defines a symbol the fragment would define."""

    kind = "conflicting_definition"
    exit_code = EXIT_CONFLICTING_DEFINITION

    def __init__(self, symbol: str, location: str) -> None:
        self.symbol = symbol
        self.location = location
        super().__init__(
            "symbol '{}' is already defined by user script content".format(symbol),
            {"symbol": symbol, "defined_at": location},
        )


class ConfigError(FlipError):
    """Raised when the wrapper configuration is invalid or unsupported."""

    kind = "config_error"
    exit_code = EXIT_CONFIG_ERROR


class LayoutVerificationError(FlipError):
    kind = "verification_failed"
    exit_code = EXIT_VERIFICATION_FAILED


class SubprocessFailure(FlipError):
    """A link invocation exited nonzero or could not be started.

    ``returncode`` is ``None`` when the process never ran.
    """

    kind = "subprocess_failure"

    def __init__(self, command: Sequence[str], returncode: Optional[int], reason: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        if returncode is None:
            message = "could not run `{}`: {}".format(format_command(command), reason or "launch failed")
        else:
            message = "`{}` exited with status {}".format(format_command(command), returncode)
        super().__init__(message)

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        if self.returncode is None:
            return EXIT_LAUNCH_FAILURE
        if self.returncode < 0:
            # Killed by a signal; report it the way a shell would.
            return EXIT_SIGNAL_BASE - self.returncode
        return self.returncode


class SubprocessTimeout(FlipError):
    kind = "subprocess_timeout"
    exit_code = EXIT_SUBPROCESS_TIMEOUT

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        self.command = list(command)
        self.timeout = timeout
        super().__init__(
            "`{}` timed out after {:g}s".format(format_command(command), timeout)
        )


class LinkInterrupted(FlipError):
    """The wrapper received a termination signal while a link step ran."""

    kind = "interrupted"

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__("interrupted by signal {}".format(signum))

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return EXIT_SIGNAL_BASE + self.signum
