"""
Install and update machinery for Z Smart Server.

This package implements:
- Version parsing and comparison
- Release resolution against the GitHub releases API
- Installation detection and manifest commit
- Archive download, extraction and merge
- Migration runner invocation
- The orchestrator driving install, update and uninstall cycles
"""

from zsmart_manager.updates.detector import (
    InstallationState,
    commit_manifest,
    detect_installation,
    stage_manifest,
)
from zsmart_manager.updates.installer import (
    ArchiveInstaller,
    DependencyInstaller,
    StagedRelease,
)
from zsmart_manager.updates.migrations import MigrationInvocation, MigrationRunner
from zsmart_manager.updates.orchestrator import (
    CycleOutcome,
    CycleState,
    OutcomeStatus,
    PlanAction,
    UpdateOrchestrator,
    UpdatePlan,
    plan_update,
)
from zsmart_manager.updates.release import ReleaseInfo, ReleaseResolver
from zsmart_manager.updates.version import (
    VersionOrder,
    compare_versions,
    normalize_tag,
    parse_version,
)

__all__ = [
    # Versions
    "VersionOrder",
    "compare_versions",
    "normalize_tag",
    "parse_version",
    # Releases
    "ReleaseInfo",
    "ReleaseResolver",
    # Detection
    "InstallationState",
    "detect_installation",
    "commit_manifest",
    "stage_manifest",
    # Installation
    "ArchiveInstaller",
    "DependencyInstaller",
    "StagedRelease",
    # Migrations
    "MigrationInvocation",
    "MigrationRunner",
    # Orchestration
    "UpdateOrchestrator",
    "UpdatePlan",
    "PlanAction",
    "CycleState",
    "CycleOutcome",
    "OutcomeStatus",
    "plan_update",
]
