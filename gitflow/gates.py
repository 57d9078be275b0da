from typing import Iterable, Optional

from .config import AutoMergePolicy, BranchMapping


def resolve_target(mapping: BranchMapping, source_branch: str) -> Optional[str]:
    """Promotion target for ``source_branch``, or None when it is not a promotion source."""
    return mapping.targets.get(source_branch)


def has_gate_label(labels: Iterable[str], gate_label: str) -> bool:
    return gate_label in set(labels)


def is_trigger_enabled(policy: AutoMergePolicy, event_kind: str) -> bool:
    if policy.always:
        return True
    return event_kind in policy.events
