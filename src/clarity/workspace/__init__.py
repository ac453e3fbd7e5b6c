"""Working-tree preparation, change classification and delivery."""

from src.clarity.workspace.changes import (
    DOC_PATTERNS,
    ChangeKind,
    ChangeSet,
    classify_changes,
    is_doc_file,
    parse_porcelain_status,
)
from src.clarity.workspace.git import (
    GitCommandError,
    GitResult,
    GitRunner,
    build_authenticated_url,
    mask_credentials,
)
from src.clarity.workspace.orchestrator import (
    BRANCH_PREFIX,
    BranchAction,
    DeliveryKind,
    DeliveryResult,
    WorkspaceOrchestrator,
    WorkspaceRun,
    WorkspaceSetupError,
)

__all__ = [
    "BRANCH_PREFIX",
    "BranchAction",
    "ChangeKind",
    "ChangeSet",
    "DOC_PATTERNS",
    "DeliveryKind",
    "DeliveryResult",
    "GitCommandError",
    "GitResult",
    "GitRunner",
    "WorkspaceOrchestrator",
    "WorkspaceRun",
    "WorkspaceSetupError",
    "build_authenticated_url",
    "classify_changes",
    "is_doc_file",
    "mask_credentials",
    "parse_porcelain_status",
]
