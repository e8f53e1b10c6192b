"""
Install/update orchestration.

Each call to install() or update() runs one cycle through these states:
- unknown: nothing inspected yet
- detected: the installation directory has been inspected
- resolved: the newest release and its asset URL are known
- planned: noop, install or update has been decided
- executing: release files are being downloaded and merged
- committed: the manifest records the new version
- failed: the cycle stopped; the error names the stage

A noop cycle ends in the planned state. Failures before executing leave the
directory untouched. Failures while executing leave whatever the installer
managed to write, but never advance the recorded version: the manifest is
written only as the final step. No rollback is attempted.

Nothing is cached between cycles. Installation state is re-read from the
filesystem at the start of every cycle, so manual changes between runs are
always picked up.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from zsmart_manager.errors import (
    FailedPreconditionError,
    FilesystemError,
    InvalidArgumentError,
    ManagerError,
    MigrationWarning,
    ResolutionFailedError,
)
from zsmart_manager.logging import get_logger
from zsmart_manager.updates.detector import (
    DEFAULT_APP_NAME,
    DEFAULT_MANIFEST_NAME,
    InstallationState,
    commit_manifest,
    detect_installation,
)
from zsmart_manager.updates.installer import ArchiveInstaller
from zsmart_manager.updates.migrations import MigrationRunner
from zsmart_manager.updates.release import ReleaseInfo, ReleaseResolver
from zsmart_manager.updates.version import (
    VersionOrder,
    compare_versions,
    is_valid_version,
    parse_version,
)

if TYPE_CHECKING:
    import httpx

    from zsmart_manager.config import ManagerConfig

logger = get_logger(__name__)


class CycleState(str, Enum):
    """States of one orchestration cycle."""

    UNKNOWN = "unknown"
    DETECTED = "detected"
    RESOLVED = "resolved"
    PLANNED = "planned"
    EXECUTING = "executing"
    COMMITTED = "committed"
    FAILED = "failed"


# Uninstall goes straight from detected to executing
_VALID_TRANSITIONS: dict[CycleState, set[CycleState]] = {
    CycleState.UNKNOWN: {CycleState.DETECTED, CycleState.FAILED},
    CycleState.DETECTED: {
        CycleState.RESOLVED,
        CycleState.EXECUTING,
        CycleState.FAILED,
    },
    CycleState.RESOLVED: {CycleState.PLANNED, CycleState.FAILED},
    CycleState.PLANNED: {CycleState.EXECUTING, CycleState.FAILED},
    CycleState.EXECUTING: {CycleState.COMMITTED, CycleState.FAILED},
    CycleState.COMMITTED: set(),
    CycleState.FAILED: set(),
}


class PlanAction(str, Enum):
    NOOP = "noop"
    INSTALL = "install"
    UPDATE = "update"


class UpdatePlan(BaseModel):
    """
    What a cycle will do.

    Attributes:
        action: noop, install or update.
        from_version: Installed version, if known.
        to_version: Version of the resolved release.
        requires_migration: Whether the migration runner must be invoked.
        forced: True when a noop was overridden by an explicit reinstall.
    """

    action: PlanAction
    from_version: str | None = None
    to_version: str
    requires_migration: bool = False
    forced: bool = False


class OutcomeStatus(str, Enum):
    COMMITTED = "committed"
    FAILED = "failed"
    NOOP = "noop"
    CANCELLED = "cancelled"


class CycleOutcome(BaseModel):
    """
    Result of an install, update or uninstall call.

    Attributes:
        action: Requested operation ("install", "update" or "uninstall").
        status: Terminal status of the cycle.
        directory: Installation directory.
        from_version: Version installed before the cycle.
        to_version: Version recorded (or targeted) by the cycle.
        plan: The plan that was executed, if planning was reached.
        failed_stage: Stage that failed ("detect", "resolve", "plan",
            "download", "extract", "merge", "dependencies", "commit",
            "uninstall").
        error: Serialized error for failed cycles.
        warnings: Non-fatal problems (e.g., migration runner missing).
        states: States the cycle went through, in order.
    """

    action: str
    status: OutcomeStatus
    directory: Path
    from_version: str | None = None
    to_version: str | None = None
    plan: UpdatePlan | None = None
    failed_stage: str | None = None
    error: dict[str, Any] | None = None
    warnings: list[str] = Field(default_factory=list)
    states: list[CycleState] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.COMMITTED, OutcomeStatus.NOOP)


def plan_update(
    state: InstallationState,
    release: ReleaseInfo,
    *,
    force: bool = False,
) -> UpdatePlan:
    """
    Decide what to do given what is installed and what was released.

    - absent: install
    - present with the same version: noop, or a reinstall without migration
      when forced
    - present otherwise: update, migrating only when the installed version
      is known

    Raises:
        InvalidVersionError: If the release tag is not a valid version.
    """
    latest = release.version
    parse_version(latest)

    if not state.present:
        return UpdatePlan(action=PlanAction.INSTALL, to_version=latest)

    current = state.version
    if current is not None:
        order = compare_versions(current, latest)
        if order == VersionOrder.EQUAL:
            if force:
                return UpdatePlan(
                    action=PlanAction.INSTALL,
                    from_version=current,
                    to_version=latest,
                    forced=True,
                )
            return UpdatePlan(
                action=PlanAction.NOOP, from_version=current, to_version=latest
            )
        if order == VersionOrder.GREATER:
            logger.warning(
                f"Installed version {current} is newer than latest release {latest}",
                extra={"from_version": current, "to_version": latest},
            )

    return UpdatePlan(
        action=PlanAction.UPDATE,
        from_version=current,
        to_version=latest,
        requires_migration=current is not None,
    )


class _CycleFailed(Exception):
    """Internal signal carrying the stage and error of a failed cycle."""

    def __init__(self, stage: str, error: ManagerError) -> None:
        super().__init__(error.message)
        self.stage = stage
        self.error = error


class _Cycle:
    """Tracks the state of one cycle and validates its transitions."""

    def __init__(
        self,
        action: str,
        directory: Path,
        callbacks: list[Callable[[CycleState, str], None]],
    ) -> None:
        self.action = action
        self.directory = directory
        self.state = CycleState.UNKNOWN
        self.history: list[CycleState] = [CycleState.UNKNOWN]
        self._callbacks = callbacks

    def transition(self, new_state: CycleState) -> None:
        """
        Move to a new state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self.state
        if new_state not in _VALID_TRANSITIONS[current]:
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                },
            )

        logger.debug(
            f"State transition: {current.value} -> {new_state.value}",
            extra={"action": self.action, "directory": str(self.directory)},
        )
        self.state = new_state
        self.history.append(new_state)

        for callback in self._callbacks:
            try:
                callback(new_state, self.action)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")


class UpdateOrchestrator:
    """
    Runs install, update and uninstall cycles for one application.

    Attributes:
        resolver: Resolves the newest release.
        installer: Merges release files into a directory.
        migration_runner: Applies data migrations; None disables them.
        repository: Release repository ("owner/name").
        app_name: Canonical application identifier.
        manifest_name: Manifest file name.

    Example:
        >>> orchestrator = UpdateOrchestrator.from_config(load_config())
        >>> outcome = orchestrator.install(Path("/srv/z-smart-server"))
        >>> outcome.status
        <OutcomeStatus.COMMITTED: 'committed'>
    """

    def __init__(
        self,
        resolver: ReleaseResolver,
        installer: ArchiveInstaller,
        migration_runner: MigrationRunner | None = None,
        *,
        repository: str = "ezequielgandolfi/z-smart-server",
        app_name: str = DEFAULT_APP_NAME,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
    ) -> None:
        self.resolver = resolver
        self.installer = installer
        self.migration_runner = migration_runner
        self.repository = repository
        self.app_name = app_name
        self.manifest_name = manifest_name
        self._progress_callbacks: list[Callable[[CycleState, str], None]] = []

    @classmethod
    def from_config(
        cls, config: ManagerConfig, client: httpx.Client | None = None
    ) -> UpdateOrchestrator:
        """Create an orchestrator and its collaborators from configuration."""
        return cls(
            resolver=ReleaseResolver.from_config(config.network, client=client),
            installer=ArchiveInstaller.from_config(config, client=client),
            migration_runner=MigrationRunner.from_config(config.install),
            repository=config.app.repository,
            app_name=config.app.name,
            manifest_name=config.app.manifest_file,
        )

    def add_progress_callback(self, callback: Callable[[CycleState, str], None]) -> None:
        """Add a callback notified with (new state, action) on every transition."""
        self._progress_callbacks.append(callback)

    def detect(self, directory: Path | str) -> InstallationState:
        """Inspect a directory for an installation."""
        return detect_installation(directory, self.app_name, self.manifest_name)

    # -------------------------------------------------------------------------
    # Install / update
    # -------------------------------------------------------------------------

    def install(self, target_dir: Path | str, *, force: bool = False) -> CycleOutcome:
        """
        Install the newest release into a directory.

        The directory is created if needed. If it already holds an
        installation the cycle behaves like update().

        Args:
            target_dir: Installation directory.
            force: Reinstall even when already up to date.

        Returns:
            CycleOutcome of the cycle.
        """
        target = Path(target_dir).expanduser().resolve()
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            error = FilesystemError(
                f"Cannot create install directory: {target}",
                details={"directory": str(target), "error": str(e)},
            )
            cycle = _Cycle("install", target, self._progress_callbacks)
            return self._failed(cycle, "detect", error)

        return self._run_cycle("install", target, force=force)

    def update(
        self,
        install_dir: Path | str,
        current_version: str | None = None,
        *,
        force: bool = False,
    ) -> CycleOutcome:
        """
        Update an existing installation to the newest release.

        Args:
            install_dir: Installation directory.
            current_version: Version the caller believes is installed. When
                given and valid it is used as the migration source instead of
                the detected version.
            force: Reinstall even when already up to date.

        Returns:
            CycleOutcome of the cycle. An absent installation yields a failed
            outcome at the detect stage.
        """
        directory = Path(install_dir).expanduser().resolve()
        return self._run_cycle(
            "update",
            directory,
            force=force,
            current_version=current_version,
            require_present=True,
        )

    def _run_cycle(
        self,
        action: str,
        directory: Path,
        *,
        force: bool = False,
        current_version: str | None = None,
        require_present: bool = False,
    ) -> CycleOutcome:
        cycle = _Cycle(action, directory, self._progress_callbacks)
        state: InstallationState | None = None
        plan: UpdatePlan | None = None
        warnings: list[str] = []

        try:
            state = self._detect_stage(cycle, current_version, require_present)
            release = self._resolve_stage(cycle)
            plan = self._plan_stage(cycle, state, release, force)

            if plan.action == PlanAction.NOOP:
                logger.info(
                    f"Already up to date ({plan.to_version})",
                    extra={"directory": str(directory)},
                )
                return CycleOutcome(
                    action=action,
                    status=OutcomeStatus.NOOP,
                    directory=directory,
                    from_version=plan.from_version,
                    to_version=plan.to_version,
                    plan=plan,
                    states=list(cycle.history),
                )

            self._execute_stage(cycle, release, plan, warnings)
        except _CycleFailed as failure:
            return self._failed(
                cycle,
                failure.stage,
                failure.error,
                from_version=state.version if state else None,
                plan=plan,
                warnings=warnings,
            )
        except Exception:
            if cycle.state not in (CycleState.COMMITTED, CycleState.FAILED):
                cycle.transition(CycleState.FAILED)
            raise

        logger.info(
            f"{action.capitalize()} of {plan.to_version} complete",
            extra={
                "directory": str(directory),
                "from_version": plan.from_version,
                "to_version": plan.to_version,
                "warnings": warnings or None,
            },
        )
        return CycleOutcome(
            action=action,
            status=OutcomeStatus.COMMITTED,
            directory=directory,
            from_version=plan.from_version,
            to_version=plan.to_version,
            plan=plan,
            warnings=warnings,
            states=list(cycle.history),
        )

    def _detect_stage(
        self,
        cycle: _Cycle,
        current_version: str | None,
        require_present: bool,
    ) -> InstallationState:
        state = self.detect(cycle.directory)
        cycle.transition(CycleState.DETECTED)

        if require_present and not state.present:
            raise _CycleFailed(
                "detect",
                FailedPreconditionError(
                    f"No installation detected in {cycle.directory}",
                    details={"directory": str(cycle.directory)},
                ),
            )

        if current_version is not None and state.present:
            if is_valid_version(current_version):
                state = state.model_copy(update={"version": current_version})
            else:
                logger.warning(
                    f"Ignoring invalid current version {current_version!r}",
                    extra={"directory": str(cycle.directory)},
                )

        logger.info(
            "Installation detected" if state.present else "No installation detected",
            extra={"directory": str(cycle.directory), "version": state.version},
        )
        return state

    def _resolve_stage(self, cycle: _Cycle) -> ReleaseInfo:
        try:
            release = self.resolver.resolve_latest(self.repository)
        except ManagerError as e:
            raise _CycleFailed("resolve", e) from e

        if not release.installable:
            raise _CycleFailed(
                "resolve",
                ResolutionFailedError(
                    f"Release {release.tag} has no "
                    f"{self.installer.archive_extension} asset",
                    details={"repository": self.repository, "tag": release.tag},
                ),
            )

        cycle.transition(CycleState.RESOLVED)
        return release

    def _plan_stage(
        self,
        cycle: _Cycle,
        state: InstallationState,
        release: ReleaseInfo,
        force: bool,
    ) -> UpdatePlan:
        try:
            plan = plan_update(state, release, force=force)
        except ManagerError as e:
            raise _CycleFailed("plan", e) from e

        cycle.transition(CycleState.PLANNED)
        logger.info(
            f"Planned {plan.action.value}: "
            f"{plan.from_version or 'none'} -> {plan.to_version}",
            extra={"requires_migration": plan.requires_migration, "forced": plan.forced},
        )
        return plan

    def _execute_stage(
        self,
        cycle: _Cycle,
        release: ReleaseInfo,
        plan: UpdatePlan,
        warnings: list[str],
    ) -> None:
        cycle.transition(CycleState.EXECUTING)

        asset_url = release.asset_url or ""
        try:
            staged = self.installer.install(asset_url, cycle.directory)
        except ManagerError as e:
            raise _CycleFailed(str(e.details.get("stage", "install")), e) from e

        if staged.version is not None and staged.version != plan.to_version:
            logger.warning(
                f"Release manifest declares {staged.version}, recording {plan.to_version}",
                extra={"directory": str(cycle.directory)},
            )

        if plan.requires_migration and plan.from_version is not None:
            warning = self._migrate(cycle.directory, plan.from_version, plan.to_version)
            if warning:
                warnings.append(warning)

        try:
            commit_manifest(
                cycle.directory,
                staged.manifest,
                plan.to_version,
                app_name=self.app_name,
                manifest_name=self.manifest_name,
            )
        except ManagerError as e:
            raise _CycleFailed("commit", e) from e

        cycle.transition(CycleState.COMMITTED)

    def _migrate(self, directory: Path, from_version: str, to_version: str) -> str | None:
        """Run migrations; return a warning message instead of failing."""
        if self.migration_runner is None:
            message = "Migration runner not configured"
            logger.warning(message)
            return message

        try:
            self.migration_runner.run(directory, from_version, to_version)
        except MigrationWarning as w:
            logger.warning(w.message, extra={"details": w.details})
            return w.message
        return None

    # -------------------------------------------------------------------------
    # Uninstall
    # -------------------------------------------------------------------------

    def uninstall(
        self,
        install_dir: Path | str,
        confirm: Callable[[str], bool],
    ) -> CycleOutcome:
        """
        Delete everything in an installation directory.

        Args:
            install_dir: Installation directory.
            confirm: Asked a yes/no question; only True proceeds. There is no
                way to skip the confirmation.

        Returns:
            CycleOutcome: committed when the files were removed, noop when no
            installation was found, cancelled when not confirmed.
        """
        directory = Path(install_dir).expanduser().resolve()
        cycle = _Cycle("uninstall", directory, self._progress_callbacks)

        state = self.detect(directory)
        cycle.transition(CycleState.DETECTED)

        if not state.present:
            logger.warning(
                "No installation detected; nothing to uninstall",
                extra={"directory": str(directory)},
            )
            return CycleOutcome(
                action="uninstall",
                status=OutcomeStatus.NOOP,
                directory=directory,
                states=list(cycle.history),
            )

        if confirm(f"Uninstall {self.app_name} from {directory}?") is not True:
            logger.info("Uninstall cancelled", extra={"directory": str(directory)})
            return CycleOutcome(
                action="uninstall",
                status=OutcomeStatus.CANCELLED,
                directory=directory,
                from_version=state.version,
                states=list(cycle.history),
            )

        cycle.transition(CycleState.EXECUTING)
        try:
            removed = _remove_directory_contents(directory)
        except FilesystemError as e:
            return self._failed(cycle, "uninstall", e, from_version=state.version)

        cycle.transition(CycleState.COMMITTED)
        logger.info(
            "Files removed",
            extra={"directory": str(directory), "entries_removed": removed},
        )
        return CycleOutcome(
            action="uninstall",
            status=OutcomeStatus.COMMITTED,
            directory=directory,
            from_version=state.version,
            states=list(cycle.history),
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _failed(
        self,
        cycle: _Cycle,
        stage: str,
        error: ManagerError,
        *,
        from_version: str | None = None,
        plan: UpdatePlan | None = None,
        warnings: list[str] | None = None,
    ) -> CycleOutcome:
        cycle.transition(CycleState.FAILED)
        logger.error(
            f"{cycle.action.capitalize()} failed during {stage}: {error.message}",
            extra={
                "directory": str(cycle.directory),
                "stage": stage,
                "error_code": error.error_code,
            },
        )
        return CycleOutcome(
            action=cycle.action,
            status=OutcomeStatus.FAILED,
            directory=cycle.directory,
            from_version=from_version,
            to_version=plan.to_version if plan else None,
            plan=plan,
            failed_stage=stage,
            error=error.to_dict(),
            warnings=warnings or [],
            states=list(cycle.history),
        )


def _remove_directory_contents(directory: Path) -> int:
    """
    Remove every entry of a directory, keeping the directory itself.

    Raises:
        FilesystemError: If an entry cannot be removed.
    """
    removed = 0
    for entry in sorted(directory.iterdir()):
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError as e:
            raise FilesystemError(
                f"Failed to remove {entry}",
                details={"path": str(entry), "error": str(e)},
            ) from e
        removed += 1
    return removed
