from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field

BRANCH_REF_PREFIX = "refs/heads/"


def label_names(labels: Optional[List[Any]]) -> FrozenSet[str]:
    names = set()
    for lbl in labels or []:
        if isinstance(lbl, dict):
            name = lbl.get("name")
        else:
            name = lbl
        if name:
            names.add(str(name))
    return frozenset(names)


class PullRequest(BaseModel):
    number: int
    head_ref: Optional[str] = None
    base_ref: Optional[str] = None
    state: str = "open"
    merged: bool = False
    title: Optional[str] = None
    labels: FrozenSet[str] = frozenset()

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "PullRequest":
        return cls(
            number=int(payload["number"]),
            head_ref=(payload.get("head") or {}).get("ref"),
            base_ref=(payload.get("base") or {}).get("ref"),
            state=payload.get("state") or "open",
            merged=bool(payload.get("merged")),
            title=payload.get("title"),
            labels=label_names(payload.get("labels")),
        )


class PullRequestSummary(BaseModel):
    # Embedded in check_run payloads; labels there may be stale so they are not kept.
    number: int


class PushEvent(BaseModel):
    kind: Literal["push"] = "push"
    ref_name: str


class ReviewEvent(BaseModel):
    kind: Literal["pull_request_review"] = "pull_request_review"
    pull_request: PullRequest


class CheckRunEvent(BaseModel):
    kind: Literal["check_run"] = "check_run"
    pull_requests: List[PullRequestSummary] = []


Event = Annotated[Union[PushEvent, ReviewEvent, CheckRunEvent], Field(discriminator="kind")]


def parse_event(event_name: str, payload: Dict[str, Any]) -> Optional[Event]:
    """Build an Event from a GitHub event name and payload, or None for kinds we do not handle."""
    if event_name == "push":
        ref = payload.get("ref") or ""
        if ref.startswith(BRANCH_REF_PREFIX):
            ref = ref[len(BRANCH_REF_PREFIX):]
        return PushEvent(ref_name=ref)
    if event_name == "pull_request_review":
        pr = payload.get("pull_request") or {}
        return ReviewEvent(pull_request=PullRequest.from_api(pr))
    if event_name == "check_run":
        prs = (payload.get("check_run") or {}).get("pull_requests") or []
        return CheckRunEvent(
            pull_requests=[PullRequestSummary(number=int(p["number"])) for p in prs if isinstance(p, dict) and p.get("number")]
        )
    return None


class Merged(BaseModel):
    number: int


class Failed(BaseModel):
    number: int
    reason: str


MergeOutcome = Union[Merged, Failed]


class Reconciliation(BaseModel):
    status: Literal["created", "reused", "not_eligible", "ambiguous"]
    number: Optional[int] = None

    @property
    def eligible(self) -> bool:
        return self.status in ("created", "reused")


class Outcome(str, Enum):
    NOOP = "noop"
    PR_CREATED_AND_MERGED = "pr_created_and_merged"
    PR_REUSED_AND_MERGED = "pr_reused_and_merged"
    MERGED = "merged"
    MERGE_FAILED_FATAL = "merge_failed_fatal"
    MERGE_FAILED_LOGGED = "merge_failed_logged"
    ERROR = "error"


FAILED_OUTCOMES = frozenset({Outcome.MERGE_FAILED_FATAL, Outcome.ERROR})


class RunResult(BaseModel):
    outcome: Outcome
    message: str = ""
    merged: List[int] = []
    failed: List[int] = []

    @property
    def ok(self) -> bool:
        return self.outcome not in FAILED_OUTCOMES
