import logging
from typing import Any, Tuple

import httpx

from .config import GitflowConfig
from .diagnostics import debug_payload
from .gates import has_gate_label
from .github import GitHubError
from .metrics import (
    labels_added_total,
    merge_attempts_total,
    pull_requests_created_total,
    reconcile_anomalies_total,
)
from .models import Failed, MergeOutcome, Merged, Outcome, Reconciliation

logger = logging.getLogger(__name__)

MERGE_FAILED_MESSAGE = "Merge failed."


def promotion_title(head: str, base: str) -> str:
    return f"{head} -> {base}"


def reconcile(gh: Any, owner: str, repo: str, head: str, base: str, cfg: GitflowConfig) -> Reconciliation:
    """Find the open promotion PR for head/base or open one.

    An existing PR without the gate label is reported as not eligible and left
    untouched. A PR opened here always gets the gate label before anything
    else looks at it.
    """
    pulls = gh.list_open_prs(owner, repo, head, base)
    debug_payload(logger, "open pull requests", [p.model_dump(mode="json") for p in pulls])
    if len(pulls) > 1:
        numbers = sorted(p.number for p in pulls)
        reconcile_anomalies_total.inc()
        logger.error(
            "Found %d open pull requests for %s -> %s in %s/%s (%s); refusing to pick one. Close the duplicates.",
            len(pulls),
            head,
            base,
            owner,
            repo,
            ", ".join(f"#{n}" for n in numbers),
        )
        return Reconciliation(status="ambiguous")
    if len(pulls) == 1:
        pr = pulls[0]
        logger.info("Pull request already exists: #%s.", pr.number)
        if not has_gate_label(pr.labels, cfg.label):
            logger.info("Pull request #%s does not have the label %s. Skipping...", pr.number, cfg.label)
            return Reconciliation(status="not_eligible", number=pr.number)
        return Reconciliation(status="reused", number=pr.number)

    created = gh.create_pr(owner, repo, base, head, promotion_title(head, base))
    pull_requests_created_total.labels(base=base).inc()
    logger.info("Pull request #%s created.", created.number)
    gh.add_labels(owner, repo, created.number, [cfg.label])
    labels_added_total.inc()
    logger.info("Label %s added to #%s.", cfg.label, created.number)
    return Reconciliation(status="created", number=created.number)


def attempt_merge(gh: Any, owner: str, repo: str, number: int) -> MergeOutcome:
    """Merge ``number`` once. Rejections, transport errors and unreadable responses come back as Failed."""
    try:
        data = gh.merge_pr(owner, repo, number)
    except (GitHubError, httpx.HTTPError, ValueError) as e:
        merge_attempts_total.labels(result="failed").inc()
        logger.debug("Merge of #%s failed: %s", number, e)
        return Failed(number=number, reason=str(e))
    merge_attempts_total.labels(result="merged").inc()
    logger.info("Pull request #%s merged.", number)
    debug_payload(logger, "merge response", data)
    return Merged(number=number)


def apply_merge_policy(outcome: MergeOutcome, cfg: GitflowConfig) -> Tuple[Outcome, str]:
    """Severity of a merge outcome: fatal only when require-merge is set."""
    if isinstance(outcome, Merged):
        return Outcome.MERGED, f"Pull request #{outcome.number} merged."
    if cfg.require_merge:
        logger.error("Merge of pull request #%s failed.", outcome.number)
        return Outcome.MERGE_FAILED_FATAL, MERGE_FAILED_MESSAGE
    logger.info("Merge failed.")
    return Outcome.MERGE_FAILED_LOGGED, MERGE_FAILED_MESSAGE
