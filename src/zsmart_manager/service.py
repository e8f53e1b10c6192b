"""
systemd "run at startup" registration.

Enabling writes a unit file that runs the application's entry point with
Node.js from the installation directory, reloads systemd, then enables and
starts the unit. Disabling stops and disables the unit, removes the file and
reloads systemd again.

Registration is Linux-only. On other platforms the operations log a warning
and report that nothing was done.
"""

from __future__ import annotations

import asyncio
import getpass
import shutil
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from zsmart_manager.errors import (
    ManagerError,
    PermissionDeniedError,
    UnavailableError,
)
from zsmart_manager.logging import get_logger

if TYPE_CHECKING:
    from zsmart_manager.config import ServiceConfig

logger = get_logger(__name__)

UNIT_TEMPLATE = """\
[Unit]
Description={description}
After=network.target

[Service]
ExecStart={node_path} {entry_point}
WorkingDirectory={working_directory}
Restart=always
User={user}
Environment=NODE_ENV=production

[Install]
WantedBy=multi-user.target
"""


class ServiceRegistrationError(ManagerError):
    """Error raised when a systemctl step of registration fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="service_error", message=message, details=details)


def is_supported_platform() -> bool:
    """Return True when systemd registration can be attempted."""
    return sys.platform.startswith("linux")


async def _run_systemctl(
    *args: str,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If systemctl is not available or times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "systemctl",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )

        return (
            proc.returncode or 0,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    except FileNotFoundError as exc:
        raise UnavailableError(
            "systemctl not available",
            details={"hint": "This system may not use systemd"},
        ) from exc
    except TimeoutError as exc:
        raise UnavailableError(
            f"systemctl command timed out after {timeout}s",
            details={"args": args},
        ) from exc


async def _systemctl_step(*args: str) -> None:
    """Run one systemctl step, raising on a non-zero exit."""
    returncode, stdout, stderr = await _run_systemctl(*args)
    if returncode != 0:
        logger.error(
            f"systemctl {' '.join(args)} failed: {stderr or stdout}",
            extra={"returncode": returncode},
        )
        raise ServiceRegistrationError(
            f"systemctl {' '.join(args)} failed",
            details={"returncode": returncode, "output": (stderr or stdout).strip()},
        )


def render_unit(
    install_dir: Path,
    node_path: str,
    *,
    entry_point: str = "src/server.js",
    description: str = "Z Smart Server",
    user: str | None = None,
) -> str:
    """
    Render the systemd unit file for an installation.

    Args:
        install_dir: Installation directory (absolute).
        node_path: Absolute path of the Node.js executable.
        entry_point: Entry point relative to install_dir.
        description: Unit description.
        user: User the service runs as; defaults to the current user.

    Returns:
        Unit file content.
    """
    return UNIT_TEMPLATE.format(
        description=description,
        node_path=node_path,
        entry_point=install_dir / entry_point,
        working_directory=install_dir,
        user=user or getpass.getuser(),
    )


class StartupServiceManager:
    """
    Enables or disables running the application at boot.

    Attributes:
        unit_name: systemd unit name without suffix.
        unit_path: Full path of the unit file.
    """

    def __init__(
        self,
        config: ServiceConfig,
        node_command: str = "node",
    ) -> None:
        """
        Initialize the manager.

        Args:
            config: Service configuration.
            node_command: Node.js executable name or path.
        """
        self._config = config
        self._node_command = node_command
        self.unit_name = config.unit_name
        self.unit_path = Path(config.unit_dir) / f"{config.unit_name}.service"

    def _node_path(self) -> str:
        node_path = shutil.which(self._node_command)
        if node_path is None:
            raise UnavailableError(
                f"{self._node_command} not found on PATH",
                details={"hint": "Install Node.js before enabling the service"},
            )
        return node_path

    def _write_unit(self, content: str) -> None:
        try:
            self.unit_path.parent.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(content, encoding="utf-8")
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Cannot write {self.unit_path}",
                details={"hint": "Run the manager with sudo"},
            ) from e

    async def enable(self, install_dir: Path) -> bool:
        """
        Register and start the service.

        Args:
            install_dir: Installation directory.

        Returns:
            True if the service was enabled, False if the platform is
            unsupported.

        Raises:
            UnavailableError: If Node.js or systemctl is unavailable.
            PermissionDeniedError: If the unit file cannot be written.
            ServiceRegistrationError: If a systemctl step fails.
        """
        if not is_supported_platform():
            logger.warning("Startup registration is only supported on Linux")
            return False

        content = render_unit(
            Path(install_dir).resolve(),
            self._node_path(),
            entry_point=self._config.entry_point,
            description=self._config.description,
            user=self._config.user,
        )
        self._write_unit(content)
        logger.info("Unit file written", extra={"path": str(self.unit_path)})

        await _systemctl_step("daemon-reload")
        await _systemctl_step("enable", self.unit_name)
        await _systemctl_step("start", self.unit_name)

        logger.info(f"Service {self.unit_name} enabled")
        return True

    async def disable(self) -> bool:
        """
        Stop and unregister the service.

        A failure to stop is logged and does not prevent removal.

        Returns:
            True if the service was disabled, False if the platform is
            unsupported.

        Raises:
            UnavailableError: If systemctl is unavailable.
            PermissionDeniedError: If the unit file cannot be removed.
            ServiceRegistrationError: If disabling or reloading fails.
        """
        if not is_supported_platform():
            logger.warning("Startup registration is only supported on Linux")
            return False

        returncode, stdout, stderr = await _run_systemctl("stop", self.unit_name)
        if returncode != 0:
            logger.warning(f"Service stop failed: {stderr or stdout}")

        await _systemctl_step("disable", self.unit_name)

        try:
            self.unit_path.unlink(missing_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Cannot remove {self.unit_path}",
                details={"hint": "Run the manager with sudo"},
            ) from e

        await _systemctl_step("daemon-reload")

        logger.info(f"Service {self.unit_name} disabled")
        return True

    async def status(self) -> dict[str, str | bool]:
        """
        Report whether the service is registered, enabled and active.

        Returns:
            Dictionary with installed, is_enabled, is_active and status.
        """
        info: dict[str, str | bool] = {
            "installed": self.unit_path.exists(),
            "is_enabled": False,
            "is_active": False,
            "status": "unknown",
        }
        if not is_supported_platform():
            return info

        try:
            returncode, stdout, _ = await _run_systemctl(
                "is-active", self.unit_name, timeout=10.0
            )
            info["is_active"] = returncode == 0
            info["status"] = stdout.strip() or "unknown"

            returncode, _, _ = await _run_systemctl(
                "is-enabled", self.unit_name, timeout=10.0
            )
            info["is_enabled"] = returncode == 0
        except UnavailableError:
            info["error"] = "systemctl not available"

        return info
