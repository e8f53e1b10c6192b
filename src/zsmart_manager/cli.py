"""
Command-line entry point.

Subcommands map one-to-one onto manager operations:

    zsmart-manager install [DIR] [--force]
    zsmart-manager update [DIR] [--force]
    zsmart-manager uninstall [DIR]
    zsmart-manager status [DIR]
    zsmart-manager service {enable,disable,status} [DIR]
    zsmart-manager runtime {check,install} [--method {homebrew,nvm}]
    zsmart-manager menu [DIR]

Without a subcommand the interactive menu starts. Exit codes: 0 committed
(or otherwise successful), 1 failed, 3 nothing to do, 4 cancelled.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from zsmart_manager import __version__
from zsmart_manager.config import ManagerConfig, load_config
from zsmart_manager.errors import ManagerError
from zsmart_manager.logging import get_logger, setup_logging
from zsmart_manager.runtime import InstallMethod, check_runtime, install_runtime
from zsmart_manager.service import StartupServiceManager, is_supported_platform
from zsmart_manager.updates.detector import InstallationState
from zsmart_manager.updates.orchestrator import (
    CycleOutcome,
    OutcomeStatus,
    UpdateOrchestrator,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOOP = 3
EXIT_CANCELLED = 4

EXIT_CODES: dict[OutcomeStatus, int] = {
    OutcomeStatus.COMMITTED: EXIT_OK,
    OutcomeStatus.FAILED: EXIT_FAILED,
    OutcomeStatus.NOOP: EXIT_NOOP,
    OutcomeStatus.CANCELLED: EXIT_CANCELLED,
}

InputFunc = Callable[[str], str]
OutputFunc = Callable[[str], None]


def confirm(question: str, input_func: InputFunc | None = None) -> bool:
    """Ask a yes/no question; only "y" or "yes" count as yes."""
    try:
        answer = (input_func or input)(f"{question} (y/n): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_outcome(outcome: CycleOutcome, output: OutputFunc) -> None:
    if outcome.status == OutcomeStatus.COMMITTED:
        if outcome.action == "uninstall":
            output(f"Files removed from {outcome.directory}.")
        else:
            output(f"{outcome.action.capitalize()} complete: v{outcome.to_version}")
    elif outcome.status == OutcomeStatus.NOOP:
        if outcome.action == "uninstall":
            output(f"No installation found in {outcome.directory}.")
        else:
            output(f"Already up to date (v{outcome.to_version}).")
    elif outcome.status == OutcomeStatus.CANCELLED:
        output("Cancelled.")
    else:
        error = outcome.error or {}
        output(
            f"{outcome.action.capitalize()} failed during {outcome.failed_stage}: "
            f"{error.get('message', 'unknown error')}"
        )
    for warning in outcome.warnings:
        output(f"Warning: {warning}")


def _describe_state(state: InstallationState) -> str:
    if not state.present:
        return f"No installation detected in {state.directory}."
    version = f"v{state.version}" if state.version else "unknown version"
    return f"Detected installation at: {state.directory} ({version})"


# =============================================================================
# Subcommands
# =============================================================================


def cmd_install(
    args: argparse.Namespace,
    orchestrator: UpdateOrchestrator,
    output: OutputFunc = print,
) -> int:
    outcome = orchestrator.install(args.directory, force=args.force)
    _print_outcome(outcome, output)
    return EXIT_CODES[outcome.status]


def cmd_update(
    args: argparse.Namespace,
    orchestrator: UpdateOrchestrator,
    output: OutputFunc = print,
) -> int:
    outcome = orchestrator.update(args.directory, force=args.force)
    _print_outcome(outcome, output)
    return EXIT_CODES[outcome.status]


def cmd_uninstall(
    args: argparse.Namespace,
    orchestrator: UpdateOrchestrator,
    output: OutputFunc = print,
    input_func: InputFunc | None = None,
) -> int:
    outcome = orchestrator.uninstall(
        args.directory, lambda question: confirm(question, input_func)
    )
    _print_outcome(outcome, output)
    return EXIT_CODES[outcome.status]


def cmd_status(
    args: argparse.Namespace,
    orchestrator: UpdateOrchestrator,
    config: ManagerConfig,
    output: OutputFunc = print,
) -> int:
    output(_describe_state(orchestrator.detect(args.directory)))
    version, compatible = check_runtime(config.runtime, config.install.node_command)
    if version is None:
        output("Node.js: not installed")
    else:
        suffix = "" if compatible else f" (requires {config.runtime.min_major_version}+)"
        output(f"Node.js: v{version}{suffix}")
    return EXIT_OK


def cmd_service(
    args: argparse.Namespace,
    orchestrator: UpdateOrchestrator,
    config: ManagerConfig,
    output: OutputFunc = print,
) -> int:
    manager = StartupServiceManager(config.service, config.install.node_command)

    if args.service_action == "status":
        info = asyncio.run(manager.status())
        for key, value in info.items():
            output(f"{key}: {value}")
        return EXIT_OK

    if not is_supported_platform():
        output("Startup settings are only supported on Linux.")
        return EXIT_NOOP

    if args.service_action == "enable":
        state = orchestrator.detect(args.directory)
        if not state.present:
            output(_describe_state(state))
            return EXIT_FAILED
        asyncio.run(manager.enable(state.directory.resolve()))
        output("Service enabled.")
    else:
        asyncio.run(manager.disable())
        output("Service disabled.")
    return EXIT_OK


def cmd_runtime(
    args: argparse.Namespace,
    config: ManagerConfig,
    output: OutputFunc = print,
) -> int:
    version, compatible = check_runtime(config.runtime, config.install.node_command)

    if args.runtime_action == "check":
        if version is None:
            output("Node.js is not installed.")
        else:
            output(f"Node.js v{version} ({'compatible' if compatible else 'too old'})")
        return EXIT_OK if compatible else EXIT_FAILED

    if compatible:
        output(f"Node.js v{version} is already compatible.")
        return EXIT_NOOP

    install_runtime(args.method, config.runtime)
    output("Node.js installed. Open a new shell if `node` is not found.")
    return EXIT_OK


# =============================================================================
# Interactive menu
# =============================================================================


class MenuCommand(str, Enum):
    INSTALL_RUNTIME = "Install Node.js (Required)"
    INSTALL = "Install Z Smart Server"
    UPDATE = "Update Z Smart Server"
    UNINSTALL = "Uninstall Z Smart Server"
    STARTUP = "Startup Settings"
    EXIT = "Exit"


def build_menu(
    state: InstallationState,
    runtime_compatible: bool,
    service_supported: bool,
) -> list[MenuCommand]:
    """Return the commands available for the current state, in display order."""
    commands: list[MenuCommand] = []
    if not runtime_compatible:
        commands.append(MenuCommand.INSTALL_RUNTIME)
    if state.present:
        commands.extend([MenuCommand.UPDATE, MenuCommand.UNINSTALL])
        if service_supported:
            commands.append(MenuCommand.STARTUP)
    else:
        commands.append(MenuCommand.INSTALL)
    commands.append(MenuCommand.EXIT)
    return commands


def _choose(
    prompt: str,
    options: list[Any],
    labels: list[str],
    input_func: InputFunc,
    output: OutputFunc,
) -> Any | None:
    for index, label in enumerate(labels, start=1):
        output(f"{index}) {label}")
    answer = input_func(prompt).strip()
    if answer.isdigit() and 1 <= int(answer) <= len(options):
        return options[int(answer) - 1]
    output("Invalid choice.")
    return None


class InteractiveMenu:
    """
    Interactive loop offering the operations valid for the current state.

    Installation state is detected again before every menu is shown.
    """

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        config: ManagerConfig,
        directory: Path,
        *,
        input_func: InputFunc = input,
        output: OutputFunc = print,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.directory = directory
        self._input = input_func
        self._output = output

    def run(self) -> int:
        handlers: dict[MenuCommand, Callable[[InstallationState], None]] = {
            MenuCommand.INSTALL_RUNTIME: self._install_runtime,
            MenuCommand.INSTALL: self._install,
            MenuCommand.UPDATE: self._update,
            MenuCommand.UNINSTALL: self._uninstall,
            MenuCommand.STARTUP: self._startup,
        }

        while True:
            state = self.orchestrator.detect(self.directory)
            _, compatible = check_runtime(
                self.config.runtime, self.config.install.node_command
            )

            self._output("")
            self._output("==============================")
            self._output(" Z Smart Server Manager")
            self._output("==============================")
            self._output(_describe_state(state))
            self._output("------------------------------")

            commands = build_menu(state, compatible, is_supported_platform())
            try:
                command = _choose(
                    "Select option: ",
                    commands,
                    [c.value for c in commands],
                    self._input,
                    self._output,
                )
            except EOFError:
                return EXIT_OK

            if command is None:
                continue
            if command == MenuCommand.EXIT:
                return EXIT_OK

            try:
                handlers[command](state)
            except EOFError:
                return EXIT_OK
            except ManagerError as e:
                logger.error(e.message, extra={"error_code": e.error_code})
                self._output(f"Error: {e.message}")

    def _install_runtime(self, _state: InstallationState) -> None:
        method = _choose(
            "Select option: ",
            [InstallMethod.HOMEBREW, InstallMethod.NVM, None],
            ["Homebrew (macOS/Linux)", "Standalone (NVM)", "Cancel"],
            self._input,
            self._output,
        )
        if method is not None:
            install_runtime(method, self.config.runtime)

    def _install(self, _state: InstallationState) -> None:
        answer = self._input(f"Install location (default: {self.directory}): ").strip()
        target = Path(answer).expanduser() if answer else self.directory
        outcome = self.orchestrator.install(target)
        _print_outcome(outcome, self._output)
        if outcome.status == OutcomeStatus.COMMITTED:
            self.directory = outcome.directory

    def _update(self, state: InstallationState) -> None:
        outcome = self.orchestrator.update(state.directory, state.version)
        if outcome.status == OutcomeStatus.NOOP and confirm(
            f"Already up to date (v{outcome.to_version}). Reinstall anyway?",
            self._input,
        ):
            outcome = self.orchestrator.update(state.directory, force=True)
        _print_outcome(outcome, self._output)

    def _uninstall(self, state: InstallationState) -> None:
        outcome = self.orchestrator.uninstall(
            state.directory, lambda question: confirm(question, self._input)
        )
        _print_outcome(outcome, self._output)

    def _startup(self, state: InstallationState) -> None:
        manager = StartupServiceManager(
            self.config.service, self.config.install.node_command
        )
        choice = _choose(
            "Choice: ",
            ["enable", "disable"],
            ["Enable Run on Startup", "Disable Run on Startup"],
            self._input,
            self._output,
        )
        if choice == "enable":
            asyncio.run(manager.enable(state.directory))
            self._output("Service enabled.")
        elif choice == "disable":
            asyncio.run(manager.disable())
            self._output("Service disabled.")


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="zsmart-manager",
        description="Install, update and manage Z Smart Server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit logs as JSON lines"
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_directory(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "directory",
            nargs="?",
            default=None,
            help="Installation directory (default: configured or current directory)",
        )

    install = subparsers.add_parser("install", help="Install the latest release")
    add_directory(install)
    install.add_argument("--force", action="store_true", help="Reinstall if current")

    update = subparsers.add_parser("update", help="Update an installation")
    add_directory(update)
    update.add_argument("--force", action="store_true", help="Reinstall if current")

    uninstall = subparsers.add_parser("uninstall", help="Remove an installation")
    add_directory(uninstall)

    status = subparsers.add_parser("status", help="Show installation status")
    add_directory(status)

    service = subparsers.add_parser("service", help="Manage run-at-startup")
    service.add_argument("service_action", choices=["enable", "disable", "status"])
    add_directory(service)

    runtime = subparsers.add_parser("runtime", help="Check or install Node.js")
    runtime.add_argument("runtime_action", choices=["check", "install"])
    runtime.add_argument(
        "--method",
        choices=[m.value for m in InstallMethod],
        default=InstallMethod.NVM.value,
        help="Installation method",
    )

    menu = subparsers.add_parser("menu", help="Interactive menu")
    add_directory(menu)

    return parser


def _config_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    logging_overrides: dict[str, Any] = {}
    if args.log_level:
        logging_overrides["level"] = args.log_level
    if args.json_logs:
        logging_overrides["json_format"] = True
    if logging_overrides:
        overrides["logging"] = logging_overrides
    return overrides


def main(
    argv: list[str] | None = None,
    *,
    orchestrator: UpdateOrchestrator | None = None,
) -> int:
    """
    Run the command line interface.

    Args:
        argv: Arguments (defaults to sys.argv[1:]).
        orchestrator: Optional preconfigured orchestrator (used by tests).

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, overrides=_config_overrides(args))
    except (FileNotFoundError, ValidationError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILED

    setup_logging(config.logging)

    if getattr(args, "directory", None) is None:
        args.directory = Path(config.install.default_directory or Path.cwd())
    else:
        args.directory = Path(args.directory)

    if orchestrator is None:
        orchestrator = UpdateOrchestrator.from_config(config)

    command = args.command or "menu"
    try:
        if command == "install":
            return cmd_install(args, orchestrator)
        if command == "update":
            return cmd_update(args, orchestrator)
        if command == "uninstall":
            return cmd_uninstall(args, orchestrator)
        if command == "status":
            return cmd_status(args, orchestrator, config)
        if command == "service":
            return cmd_service(args, orchestrator, config)
        if command == "runtime":
            return cmd_runtime(args, config)
        return InteractiveMenu(orchestrator, config, args.directory).run()
    except ManagerError as e:
        logger.error(e.message, extra={"error_code": e.error_code, "details": e.details})
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
