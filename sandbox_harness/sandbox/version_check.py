"""Check that the installed sandbox CLI is the version the tests expect."""

import asyncio
import os
import re

from ..log_config import configure_logging, get_logger
from .errors import SpawnError, ToolMissingError, VersionMismatchError

configure_logging()

log = get_logger("version_check")

VERSION_RE = re.compile(r"\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.\-]+)?")
VERSION_CHECK_TIMEOUT = 30.0


def parse_version(output: str) -> str | None:
    """Pull the first semver-looking token out of ``--version`` output."""
    match = VERSION_RE.search(output)
    return match.group(0) if match else None


async def check_cli_version(binary: str = "aztec", expected: str | None = None) -> str:
    """
    Run ``<binary> --version`` and compare against ``expected``.

    ``expected`` falls back to ``SANDBOX_EXPECTED_VERSION``; with neither set
    the installed version is only reported.

    Returns:
        The installed version string

    Raises:
        ToolMissingError: binary not installed
        SpawnError: the command failed or printed no version
        VersionMismatchError: installed version differs from the expected one
    """
    expected = expected or os.environ.get("SANDBOX_EXPECTED_VERSION") or None

    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        raise ToolMissingError(
            f"{binary} CLI not found. Please install it", phase="version-check"
        ) from e

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=VERSION_CHECK_TIMEOUT)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise SpawnError(f"{binary} --version timed out", phase="version-check") from e

    output = stdout.decode(errors="replace").strip()
    if process.returncode != 0:
        raise SpawnError(
            f"{binary} --version exited with code {process.returncode}: {output}",
            phase="version-check",
        )

    installed = parse_version(output)
    if installed is None:
        raise SpawnError(f"Could not parse version from: {output!r}", phase="version-check")

    if expected and installed.lstrip("v") != expected.lstrip("v"):
        raise VersionMismatchError(
            f"{binary} version {installed} does not match expected {expected}"
        )

    log.info("version_check.ok", binary=binary, version=installed, expected=expected)
    return installed
