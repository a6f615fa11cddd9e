"""
CLI for the idempotent Infisical installer.
"""

from __future__ import annotations

import argparse
from typing import List, Optional

from infisical_wizard.errors import InstallerError
from infisical_wizard.log import die

DESCRIPTION = "Idempotent installer for self-hosted Infisical secret manager."

EPILOG = (
    "The installer prompts for configuration values interactively.\n"
    "Press Enter at any prompt to accept the default (shown in brackets).\n\n"
    "On re-run, previously saved configuration values become the new defaults."
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sudo python -m infisical_wizard",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-y",
        "--yes",
        "--non-interactive",
        dest="non_interactive",
        action="store_true",
        help="Skip prompts, use defaults or saved configuration",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    known, unknown = parser.parse_known_args(argv)
    if unknown:
        die(f"Unknown option: {unknown[0]}. Use --help for usage.")
    return known


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    from infisical_wizard.orchestrator import run_install

    try:
        run_install(interactive=not args.non_interactive)
    except InstallerError as exc:
        die(str(exc))
