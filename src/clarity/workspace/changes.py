"""Working-tree change classification.

A change set is doc-only when every changed path matches one of
``DOC_PATTERNS``. The list is fixed; repositories cannot override it.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List

logger = logging.getLogger(__name__)

DOC_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^doc/",
        r"^docs/",
        r"\.md$",
        r"^readme",
        r"^changelog",
        r"^license",
        r"^\.github/",
    )
)


class ChangeKind(str, Enum):
    NONE = "none"
    DOC_ONLY = "doc_only"
    CODE = "code"


@dataclass
class ChangeSet:
    """Changed paths in a working tree and their classification."""

    kind: ChangeKind
    paths: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.kind is not ChangeKind.NONE

    @property
    def is_doc_only(self) -> bool:
        return self.kind is ChangeKind.DOC_ONLY


def is_doc_file(path: str) -> bool:
    return any(pattern.search(path) for pattern in DOC_PATTERNS)


def _unquote_path(path: str) -> str:
    """Undo git's C-style quoting of paths with special characters."""
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    inner = path[1:-1]
    try:
        return (
            inner.encode("latin-1")
            .decode("unicode_escape")
            .encode("latin-1")
            .decode("utf-8")
        )
    except UnicodeError:
        return inner


def parse_porcelain_status(output: str) -> List[str]:
    """Extract changed paths from ``git status --porcelain`` (v1) output.

    Renames and copies report their destination path.
    """
    paths = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        status, path = line[:2], line[3:]
        if ("R" in status or "C" in status) and " -> " in path:
            path = path.rpartition(" -> ")[2]
        paths.append(_unquote_path(path))
    return paths


def classify_changes(paths: Iterable[str]) -> ChangeSet:
    changed = [p for p in paths if p]
    if not changed:
        return ChangeSet(kind=ChangeKind.NONE)

    kind = ChangeKind.DOC_ONLY if all(is_doc_file(p) for p in changed) else ChangeKind.CODE
    logger.info(
        "Classified working tree changes",
        extra={
            "total_changes": len(changed),
            "changed_files": changed[:10],
            "change_kind": kind.value,
        },
    )
    return ChangeSet(kind=kind, paths=changed)
