"""
Domain models — Pydantic types for provisionctl.

All models are re-exported here for convenient access:

    from provisionctl.core.models import Step, ExecutionRecord, Snapshot, PlanFile
"""

from provisionctl.core.models.action import Action, Receipt
from provisionctl.core.models.plan import PlanFile, Settings
from provisionctl.core.models.record import (
    ExecutionRecord,
    Outcome,
    SkipReason,
    Snapshot,
    SnapshotEntry,
)
from provisionctl.core.models.step import (
    AllOfCheck,
    Check,
    CommandAction,
    CommandCheck,
    FileContentCheck,
    LineInFileAction,
    LineInFileCheck,
    PackageAction,
    PackagesInstalledCheck,
    PathExistsCheck,
    ServiceAction,
    ServiceActiveCheck,
    ServiceEnabledCheck,
    Step,
    StepAction,
    SysctlCheck,
    WriteFileAction,
)

__all__ = [
    # action.py
    "Action",
    "AllOfCheck",
    "Check",
    "CommandAction",
    "CommandCheck",
    # record.py
    "ExecutionRecord",
    "FileContentCheck",
    "LineInFileAction",
    "LineInFileCheck",
    "Outcome",
    "PackageAction",
    "PackagesInstalledCheck",
    "PathExistsCheck",
    # plan.py
    "PlanFile",
    "Receipt",
    "ServiceAction",
    "ServiceActiveCheck",
    "ServiceEnabledCheck",
    "Settings",
    "SkipReason",
    "Snapshot",
    "SnapshotEntry",
    # step.py
    "Step",
    "StepAction",
    "SysctlCheck",
    "WriteFileAction",
]
