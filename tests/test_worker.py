import httpx

from gitflow.config import GitflowConfig
from gitflow.github import GitHubError
from gitflow.models import Failed, Merged, Outcome, PullRequest
from gitflow.worker import MERGE_FAILED_MESSAGE, apply_merge_policy, attempt_merge, reconcile


class GHBase:
    def __init__(self, open_prs=None):
        self.calls = []
        self.open_prs = list(open_prs or [])

    def list_open_prs(self, owner, repo, head, base):
        self.calls.append(("list", owner, head, base))
        return [p for p in self.open_prs if p.head_ref == head and p.base_ref == base]

    def create_pr(self, owner, repo, base, head, title):
        self.calls.append(("create", head, base, title))
        pr = PullRequest(number=31, head_ref=head, base_ref=base, title=title)
        self.open_prs.append(pr)
        return pr

    def add_labels(self, owner, repo, number, labels):
        self.calls.append(("label", number, list(labels)))
        return list(labels)


def test_reconcile_creates_and_labels_new_pr():
    gh = GHBase()
    rec = reconcile(gh, "octo", "repo", "release", "master", GitflowConfig())
    assert rec.status == "created"
    assert rec.number == 31
    assert gh.calls == [
        ("list", "octo", "release", "master"),
        ("create", "release", "master", "release -> master"),
        ("label", 31, ["gitflow"]),
    ]


def test_reconcile_reuses_labelled_pr():
    existing = PullRequest(number=5, head_ref="release", base_ref="master", labels=frozenset({"gitflow", "ci"}))
    gh = GHBase([existing])
    rec = reconcile(gh, "octo", "repo", "release", "master", GitflowConfig())
    assert rec.status == "reused"
    assert rec.number == 5
    assert [c[0] for c in gh.calls] == ["list"]


def test_reconcile_never_labels_pr_it_did_not_create():
    existing = PullRequest(number=6, head_ref="master", base_ref="dev", labels=frozenset({"do-not-merge"}))
    gh = GHBase([existing])
    rec = reconcile(gh, "octo", "repo", "master", "dev", GitflowConfig())
    assert rec.status == "not_eligible"
    assert rec.number == 6
    assert not rec.eligible
    assert all(c[0] != "label" for c in gh.calls)


def test_reconcile_uses_configured_gate_label():
    gh = GHBase()
    reconcile(gh, "octo", "repo", "release", "master", GitflowConfig(label="promote"))
    assert ("label", 31, ["promote"]) in gh.calls


def test_reconcile_with_duplicate_open_prs_is_ambiguous():
    dupes = [
        PullRequest(number=7, head_ref="release", base_ref="master", labels=frozenset({"gitflow"})),
        PullRequest(number=8, head_ref="release", base_ref="master", labels=frozenset({"gitflow"})),
    ]
    gh = GHBase(dupes)
    rec = reconcile(gh, "octo", "repo", "release", "master", GitflowConfig())
    assert rec.status == "ambiguous"
    assert rec.number is None
    assert [c[0] for c in gh.calls] == ["list"]


class GHMerge:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def merge_pr(self, owner, repo, number):
        self.calls.append(("merge", number))
        if self.error is not None:
            raise self.error
        return {"merged": True, "sha": "abc"}


def test_attempt_merge_success():
    gh = GHMerge()
    assert attempt_merge(gh, "octo", "repo", 3) == Merged(number=3)


def test_attempt_merge_rejection_is_classified_not_raised():
    gh = GHMerge(GitHubError(405, "Pull Request is not mergeable"))
    outcome = attempt_merge(gh, "octo", "repo", 3)
    assert isinstance(outcome, Failed)
    assert "not mergeable" in outcome.reason
    assert gh.calls == [("merge", 3)]


def test_attempt_merge_transport_error_is_a_failed_merge():
    gh = GHMerge(httpx.ConnectError("connection reset"))
    outcome = attempt_merge(gh, "octo", "repo", 4)
    assert isinstance(outcome, Failed)
    assert gh.calls == [("merge", 4)]


def test_merge_policy_severity():
    failed = Failed(number=9, reason="405 conflict")
    status, message = apply_merge_policy(failed, GitflowConfig(require_merge=True))
    assert status == Outcome.MERGE_FAILED_FATAL
    # platform error text stays out of the operator-facing message
    assert message == MERGE_FAILED_MESSAGE

    status, message = apply_merge_policy(failed, GitflowConfig(require_merge=False))
    assert status == Outcome.MERGE_FAILED_LOGGED
    assert message == MERGE_FAILED_MESSAGE

    status, _ = apply_merge_policy(Merged(number=9), GitflowConfig(require_merge=True))
    assert status == Outcome.MERGED


class HTMLResp:
    status_code = 200
    headers = {}
    text = "<html>ok</html>"

    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_merge_with_unreadable_success_body_counts_as_merged(monkeypatch):
    from gitflow.github import GitHubClient

    monkeypatch.setattr(httpx, "request", lambda *a, **kw: HTMLResp())
    outcome = attempt_merge(GitHubClient(token="t"), "octo", "repo", 12)
    assert outcome == Merged(number=12)


def test_merge_raising_value_error_is_a_failed_merge():
    gh = GHMerge(ValueError("bad body"))
    outcome = attempt_merge(gh, "octo", "repo", 13)
    assert isinstance(outcome, Failed)
