"""Pipeline phases, one module per phase."""

from changeflow.engine.phases.analyze import AnalyzePhase
from changeflow.engine.phases.base import Phase
from changeflow.engine.phases.branch import BranchPhase
from changeflow.engine.phases.commit import CommitPhase
from changeflow.engine.phases.complete import CompletePhase
from changeflow.engine.phases.deploy import DeployPhase
from changeflow.engine.phases.implement import ImplementPhase
from changeflow.engine.phases.provision import ProvisionPhase
from changeflow.engine.phases.publish import MergePhase, PublishPhase
from changeflow.engine.phases.validate import ValidatePhase
from changeflow.engine.phases.verify import VerifyPhase

PHASE_CLASSES: dict[str, type[Phase]] = {
    phase.name: phase
    for phase in (
        ValidatePhase,
        AnalyzePhase,
        BranchPhase,
        ProvisionPhase,
        ImplementPhase,
        CommitPhase,
        PublishPhase,
        MergePhase,
        DeployPhase,
        VerifyPhase,
        CompletePhase,
    )
}

__all__ = [
    "PHASE_CLASSES",
    "AnalyzePhase",
    "BranchPhase",
    "CommitPhase",
    "CompletePhase",
    "DeployPhase",
    "ImplementPhase",
    "MergePhase",
    "Phase",
    "ProvisionPhase",
    "PublishPhase",
    "ValidatePhase",
    "VerifyPhase",
]
