#!/usr/bin/env python3
"""Stack-guard link wrapper: link twice, moving static data away from the stack.

Use it in place of the linker.  Everything after ``--`` (or every argument,
when there is no ``--``) is passed to the wrapped linker unchanged.

Usage:
    stackflip [options] -- -o firmware.elf main.o -T link.ld
    STACKFLIP_LINKER=arm-none-eabi-ld stackflip -o firmware.elf main.o -T link.ld

Options (before ``--`` only):
    --config FILE       YAML config (default: $STACKFLIP_CONFIG, ./stackflip.yaml)
    --linker CMD        Linker command (overrides config and $STACKFLIP_LINKER)
    --timeout SECONDS   Per-invocation timeout
    --region NAME       Stack-bearing region (repeatable)
    --stack-symbol SYM  Symbol receiving the initial stack pointer
    --allow-override    Redefine symbols the user scripts already define
    --no-verify         Skip the post-link ELF check
    -v, --verbose       Log commands and the computed layout
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import shlex
import signal
import sys
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple

from convention_loader import (
    ENV_VERBOSE,
    StackRegionRule,
    WrapperConfig,
    _parse_symbol,
    apply_environment,
    discover_config,
)
from flip_errors import EXIT_SIGNAL_BASE, ConfigError, FlipError
from link_orchestrator import LinkOrchestrator

LOGGER = logging.getLogger("stackflip")


def split_argv(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Split wrapper options from linker arguments at the first ``--``."""
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return [], argv


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stackflip",
        description="Link twice so a stack overflow hits a guard boundary instead of static data.",
        usage="%(prog)s [options] -- <linker arguments>",
    )
    parser.add_argument("--config", default="", help="YAML config file.")
    parser.add_argument("--linker", default="", help="Linker command (shell-style quoting allowed).")
    parser.add_argument("--timeout", type=float, default=None, help="Per-invocation timeout in seconds.")
    parser.add_argument(
        "--region",
        action="append",
        default=[],
        metavar="NAME",
        help="Stack-bearing memory region (repeatable). Default: from config or automatic.",
    )
    parser.add_argument("--stack-symbol", default="", help="Symbol set to the initial stack pointer.")
    parser.add_argument(
        "--allow-override",
        action="store_true",
        help="Allow redefining stack symbols already defined by user scripts.",
    )
    parser.add_argument("--no-verify", action="store_true", help="Skip the post-link ELF check.")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def apply_options(config: WrapperConfig, args: argparse.Namespace) -> WrapperConfig:
    """Layer command-line options over the loaded config."""
    convention = config.convention
    link = config.link

    if args.stack_symbol:
        symbol = _parse_symbol(args.stack_symbol, "--stack-symbol")
        convention = dataclasses.replace(
            convention,
            stack_symbol=symbol,
            stack_regions=tuple(
                StackRegionRule(region=rule.region, stack_symbol=symbol)
                for rule in convention.stack_regions
            ),
        )
    if args.region:
        convention = dataclasses.replace(
            convention,
            stack_regions=tuple(
                StackRegionRule(region=name, stack_symbol=convention.stack_symbol)
                for name in args.region
            ),
        )
    if args.allow_override:
        convention = dataclasses.replace(convention, allow_override=True)

    if args.linker:
        tool = shlex.split(args.linker)
        if not tool:
            raise ConfigError("--linker must not be empty")
        link = link.replace(tool=tool)
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ConfigError("--timeout must be positive, got {:g}".format(args.timeout))
        link = link.replace(timeout=args.timeout)
    if args.no_verify:
        link = link.replace(verify_output=False)

    return WrapperConfig(convention=convention, link=link, source=config.source)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="stackflip: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    logging.captureWarnings(True)


def _verbose_from_env(environ: Mapping[str, str]) -> bool:
    return environ.get(ENV_VERBOSE, "").strip().lower() in ("1", "true", "yes", "on")


def main(argv: Optional[List[str]] = None) -> int:
    wrapper_argv, linker_argv = split_argv(sys.argv[1:] if argv is None else argv)
    args = parse_args(wrapper_argv)
    configure_logging(args.verbose or _verbose_from_env(os.environ))

    if not linker_argv:
        print("stackflip: no linker arguments given", file=sys.stderr)
        return 2

    try:
        config = discover_config(args.config, os.environ, Path.cwd())
        config = apply_options(apply_environment(config, os.environ), args)
    except FileNotFoundError as exc:
        print("stackflip: error: {}".format(exc), file=sys.stderr)
        return ConfigError.exit_code
    except FlipError as exc:
        print("stackflip: error: {}".format(exc.describe()), file=sys.stderr)
        return exc.exit_code

    if config.source is not None:
        LOGGER.debug("config: %s", config.source)
    LOGGER.debug("linker: %s", " ".join(config.link.tool))

    try:
        return LinkOrchestrator(config).run(linker_argv)
    except KeyboardInterrupt:
        print("stackflip: interrupted", file=sys.stderr)
        return EXIT_SIGNAL_BASE + signal.SIGINT


if __name__ == "__main__":
    raise SystemExit(main())
