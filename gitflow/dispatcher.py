"""Route one inbound event through the push, review or check-run flow.

Every flow ends in exactly one ``RunResult``. Expected no-ops (branch not
promoted, label missing, event kind disabled, no pull requests) succeed.
Merge failures are fatal only under ``require_merge``. Anything else that
escapes a flow is caught by ``Dispatcher.run`` and fails the run with the
underlying message.
"""
import logging
import time
from typing import Any, List

from .config import GitflowConfig
from .diagnostics import debug_payload
from .gates import has_gate_label, is_trigger_enabled, resolve_target
from .metrics import dispatch_seconds, events_dispatched_total
from .models import CheckRunEvent, Event, Failed, MergeOutcome, Merged, Outcome, PushEvent, ReviewEvent, RunResult
from .worker import apply_merge_policy, attempt_merge, reconcile

logger = logging.getLogger(__name__)


def _noop(message: str) -> RunResult:
    logger.info(message)
    return RunResult(outcome=Outcome.NOOP, message=message)


class Dispatcher:
    def __init__(self, gh: Any, owner: str, repo: str, cfg: GitflowConfig):
        self.gh = gh
        self.owner = owner
        self.repo = repo
        self.cfg = cfg

    def run(self, event: Event) -> RunResult:
        """Dispatch ``event``; unexpected errors end the run as failed with their message."""
        start = time.perf_counter()
        try:
            result = self.dispatch(event)
        except Exception as e:
            logger.error("Run failed for %s event in %s/%s: %s", event.kind, self.owner, self.repo, e)
            logger.debug("Run failure detail", exc_info=True)
            result = RunResult(outcome=Outcome.ERROR, message=str(e) or e.__class__.__name__)
        dispatch_seconds.labels(event=event.kind).observe(time.perf_counter() - start)
        events_dispatched_total.labels(event=event.kind, outcome=result.outcome.value).inc()
        return result

    def dispatch(self, event: Event) -> RunResult:
        debug_payload(logger, "event", event.model_dump(mode="json"))
        if isinstance(event, PushEvent):
            return self.on_push(event)
        if isinstance(event, ReviewEvent):
            return self.on_review(event)
        if isinstance(event, CheckRunEvent):
            return self.on_check_run(event)
        raise TypeError(f"Unhandled event type: {type(event).__name__}")

    def on_push(self, event: PushEvent) -> RunResult:
        cfg = self.cfg
        head = event.ref_name
        base = resolve_target(cfg.branch_mapping, head)
        if base is None:
            return _noop(f"Branch {head} is neither {cfg.master_branch} or {cfg.release_branch}. Skipping...")
        rec = reconcile(self.gh, self.owner, self.repo, head, base, cfg)
        if rec.number is None:  # ambiguous, no single PR to act on
            return RunResult(outcome=Outcome.NOOP, message=f"More than one open pull request for {head} -> {base}.")
        if not rec.eligible:
            return RunResult(outcome=Outcome.NOOP, message=f"Pull request #{rec.number} does not have the label {cfg.label}.")
        if not is_trigger_enabled(cfg.auto_merge, "push"):
            return _noop("Auto merge is disabled for pushes. Skipping...")
        outcome = attempt_merge(self.gh, self.owner, self.repo, rec.number)
        result = self._merge_result(outcome)
        if isinstance(outcome, Merged):
            merged_as = Outcome.PR_CREATED_AND_MERGED if rec.status == "created" else Outcome.PR_REUSED_AND_MERGED
            return result.model_copy(update={"outcome": merged_as})
        return result

    def on_review(self, event: ReviewEvent) -> RunResult:
        cfg = self.cfg
        if not is_trigger_enabled(cfg.auto_merge, "pull_request_review"):
            return _noop(
                "Auto merge is disabled for pull-request reviews. "
                "You should remove the `pull_request_review` event from the action configuration. Skipping..."
            )
        pr = event.pull_request
        if not has_gate_label(pr.labels, cfg.label):
            return _noop(f"Pull request does not have the label {cfg.label}. Skipping...")
        return self._merge_result(attempt_merge(self.gh, self.owner, self.repo, pr.number))

    def on_check_run(self, event: CheckRunEvent) -> RunResult:
        cfg = self.cfg
        if not is_trigger_enabled(cfg.auto_merge, "check_run"):
            return _noop(
                "Auto merge is disabled for check runs. "
                "You should remove the `check_run` event from the action configuration. Skipping..."
            )
        if not event.pull_requests:
            return _noop("Empty pull request list. Stepping out...")
        results: List[RunResult] = []
        for summary in event.pull_requests:
            # The payload's PR summary can be stale; labels are read fresh.
            pr = self.gh.get_pr(self.owner, self.repo, summary.number)
            if not has_gate_label(pr.labels, cfg.label):
                logger.info("Pull request #%s does not have the label %s. Skipping...", summary.number, cfg.label)
                continue
            results.append(self._merge_result(attempt_merge(self.gh, self.owner, self.repo, summary.number)))
        return self._combine(results)

    def _merge_result(self, outcome: MergeOutcome) -> RunResult:
        status, message = apply_merge_policy(outcome, self.cfg)
        if isinstance(outcome, Failed):
            return RunResult(outcome=status, message=message, failed=[outcome.number])
        return RunResult(outcome=status, message=message, merged=[outcome.number])

    def _combine(self, results: List[RunResult]) -> RunResult:
        if not results:
            return _noop("No labelled pull requests to merge.")
        merged = [n for r in results for n in r.merged]
        failed = [n for r in results for n in r.failed]
        outcomes = {r.outcome for r in results}
        for severity in (Outcome.MERGE_FAILED_FATAL, Outcome.MERGE_FAILED_LOGGED):
            if severity in outcomes:
                message = next(r.message for r in results if r.outcome == severity)
                return RunResult(outcome=severity, message=message, merged=merged, failed=failed)
        message = ", ".join(f"#{n}" for n in merged) + " merged."
        return RunResult(outcome=Outcome.MERGED, message=message, merged=merged, failed=failed)
