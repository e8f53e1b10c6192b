"""
Node.js runtime detection and installation.

The application needs Node.js 22 or newer. The manager can check the
installed version and install Node.js with Homebrew or with NVM; how those
tools do their job is outside the manager's concern, so each installation
method is a single external command whose exit status decides success.
"""

from __future__ import annotations

import shlex
import shutil
from enum import Enum
from typing import TYPE_CHECKING

from zsmart_manager.errors import InvalidVersionError, UnavailableError
from zsmart_manager.logging import get_logger
from zsmart_manager.process_utils import run_command
from zsmart_manager.updates.version import normalize_tag, parse_version

if TYPE_CHECKING:
    from zsmart_manager.config import RuntimeConfig

logger = get_logger(__name__)

INSTALL_TIMEOUT_SECONDS = 1800.0


class InstallMethod(str, Enum):
    HOMEBREW = "homebrew"
    NVM = "nvm"


def get_node_version(node_command: str = "node") -> str | None:
    """
    Return the installed Node.js version without its "v" prefix.

    Returns:
        Version string such as "22.3.0", or None if Node.js is missing or
        reports something unparsable.
    """
    try:
        result = run_command(node_command, "-v", timeout=15.0)
    except UnavailableError:
        return None

    if not result.ok:
        return None

    version = normalize_tag(result.stdout)
    try:
        parse_version(version)
    except InvalidVersionError:
        return None
    return version


def is_compatible(version: str | None, min_major: int = 22) -> bool:
    """Return True if version's major component is at least min_major."""
    if version is None:
        return False
    try:
        major = parse_version(version)[0]
    except InvalidVersionError:
        return False
    return major >= min_major


def check_runtime(config: RuntimeConfig, node_command: str = "node") -> tuple[str | None, bool]:
    """
    Detect Node.js and whether it satisfies the configured minimum.

    Returns:
        Tuple of (installed version or None, compatible).
    """
    version = get_node_version(node_command)
    compatible = is_compatible(version, config.min_major_version)
    logger.debug(
        "Runtime check",
        extra={"node_version": version, "compatible": compatible},
    )
    return version, compatible


def _nvm_script(config: RuntimeConfig) -> str:
    major = str(config.min_major_version)
    return " && ".join(
        [
            f"curl -fsSL -o- {shlex.quote(config.nvm_install_url)} | bash",
            'export NVM_DIR="$HOME/.nvm"',
            '. "$NVM_DIR/nvm.sh"',
            f"nvm install {major}",
            f"nvm use {major}",
            f"nvm alias default {major}",
        ]
    )


def install_runtime(method: InstallMethod | str, config: RuntimeConfig) -> None:
    """
    Install Node.js with the given method.

    Args:
        method: "homebrew" or "nvm".
        config: Runtime configuration.

    Raises:
        UnavailableError: If the installation tool is missing or the
            installation command fails.
    """
    method = InstallMethod(method)
    logger.info(f"Installing Node.js with {method.value}")

    if method == InstallMethod.HOMEBREW:
        if shutil.which("brew") is None:
            raise UnavailableError(
                "Homebrew not found",
                details={"hint": "Install Homebrew or use the nvm method"},
            )
        result = run_command("brew", "install", "node", timeout=INSTALL_TIMEOUT_SECONDS)
    else:
        result = run_command(
            "bash", "-c", _nvm_script(config), timeout=INSTALL_TIMEOUT_SECONDS
        )

    if not result.ok:
        raise UnavailableError(
            f"Node.js installation with {method.value} failed",
            details={"returncode": result.returncode, "output": result.output_tail()},
        )

    logger.info("Node.js installed", extra={"method": method.value})
