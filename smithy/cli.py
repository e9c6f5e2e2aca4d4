"""Command line arguments of the smithy command."""

from __future__ import annotations

import argparse
import re
from dataclasses import dataclass
from typing import Sequence

_VERSION = "0.2.0"
_DESCRIPTION = (
    "A command line utility to mount Minecraft region files (.mca) as FUSE directories"
)
_REGION_NAME = re.compile(r"r\.(?P<x>-?\d+)\.(?P<z>-?\d+)\.mca\Z", re.ASCII)
_ISIZE_MIN = -(2**63)
_ISIZE_MAX = 2**63 - 1

SHELLS = ("bash", "elvish", "fish", "powershell", "zsh")


def _coordinate(text: str, axis: str) -> int:
    value = int(text)
    if not _ISIZE_MIN <= value <= _ISIZE_MAX:
        raise ValueError(
            f"{axis} coordinate is not a number: number too large to fit in target type"
        )
    return value


@dataclass(frozen=True)
class ExtendedFilename:
    """A region file name together with the region coordinates it encodes."""

    fname: str
    x: int
    z: int

    @classmethod
    def parse(cls, text: str) -> ExtendedFilename:
        """Parse a path ending in ``r.{x}.{z}.mca``; raises ValueError otherwise."""
        match = _REGION_NAME.search(text)
        if match is None:
            raise ValueError(f"`{text}` must end with r.{{x}}.{{z}}.mca")
        x = _coordinate(match["x"], "x")
        z = _coordinate(match["z"], "z")
        return cls(text, x, z)


def _region_file(text: str) -> ExtendedFilename:
    try:
        return ExtendedFilename.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    """The argument parser with the ``mount`` and ``completion`` subcommands."""
    parser = argparse.ArgumentParser(prog="smithy", description=_DESCRIPTION)
    parser.add_argument("-V", "--version", action="version", version=f"Smithy {_VERSION}")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    mount = commands.add_parser(
        "mount",
        help="Mount a region file as a directory",
        description="Mount a region file as a directory",
    )
    mount.add_argument(
        "region_file", type=_region_file, help="Region (Anvil) file to mount"
    )
    mount.add_argument("mount_point", help="Path to mount the FUSE fs at")
    mount.add_argument("-w", "--writable", action="store_true", help="Allow writing")
    mount.add_argument(
        "-u",
        "--auto-unmount",
        dest="auto_unmount",
        action="store_true",
        help="Automatically unmount on process exit",
    )

    completion = commands.add_parser(
        "completion",
        help="Generate shell completions",
        description="Generate shell completions",
    )
    completion.add_argument("-s", "--shell", required=True, choices=SHELLS)
    completion.add_argument(
        "-o",
        "--out-dir",
        dest="out_dir",
        default=None,
        help="Location to create completions script, or blank for stdout",
    )

    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments; invalid input exits through argparse."""
    return build_parser().parse_args(argv)