import base64
import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

import gitflow.github as ghmod
from gitflow.github import GitHubClient, GitHubError


class FakeResp:
    def __init__(self, status_code=200, headers=None, body=None):
        self.status_code = status_code
        self._headers = headers or {}
        self._body = body if body is not None else {}
        # provide sensible defaults for rate limit headers
        self._headers.setdefault("X-RateLimit-Remaining", "4999")
        self._headers.setdefault("X-RateLimit-Reset", str(int(time.time()) + 3600))

    @property
    def headers(self):
        return self._headers

    def json(self):
        return self._body

    @property
    def text(self):
        return json.dumps(self._body)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise AssertionError(f"HTTP {self.status_code}")


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda s: None)


def _scripted(monkeypatch, responses):
    """Replace httpx.request with one that replays ``responses`` and records calls."""
    calls = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(httpx, "request", fake_request)
    return calls


def test_token_client_sends_static_token(monkeypatch):
    calls = _scripted(monkeypatch, [FakeResp(200, body={"number": 1, "labels": []})])
    GitHubClient(token="ghs_abc").get_pr("octo", "repo", 1)
    assert calls[0]["headers"]["Authorization"] == "token ghs_abc"


def test_client_needs_credentials():
    with pytest.raises(ValueError):
        GitHubClient()


def test_list_open_prs_filters_by_owner_head_and_base(monkeypatch):
    body = [{"number": 3, "head": {"ref": "release"}, "base": {"ref": "master"}, "labels": [{"name": "gitflow"}]}]
    calls = _scripted(monkeypatch, [FakeResp(200, body=body)])
    prs = GitHubClient(token="t").list_open_prs("octo", "repo", "release", "master")
    assert calls[0]["url"].endswith("/repos/octo/repo/pulls")
    assert calls[0]["params"]["head"] == "octo:release"
    assert calls[0]["params"]["base"] == "master"
    assert calls[0]["params"]["state"] == "open"
    assert prs[0].number == 3
    assert prs[0].labels == frozenset({"gitflow"})


def test_create_pr_and_add_labels(monkeypatch):
    calls = _scripted(
        monkeypatch,
        [FakeResp(201, body={"number": 8, "title": "release -> master"}), FakeResp(200, body=[{"name": "gitflow"}])],
    )
    gh = GitHubClient(token="t")
    pr = gh.create_pr("octo", "repo", "master", "release", "release -> master")
    assert pr.number == 8
    assert calls[0]["json"] == {"base": "master", "head": "release", "title": "release -> master"}
    assert gh.add_labels("octo", "repo", 8, ["gitflow"]) == ["gitflow"]
    assert calls[1]["url"].endswith("/repos/octo/repo/issues/8/labels")
    assert calls[1]["json"] == {"labels": ["gitflow"]}


def test_get_retries_on_server_error(monkeypatch, no_sleep):
    calls = _scripted(monkeypatch, [FakeResp(502), FakeResp(200, body={"number": 2, "labels": []})])
    pr = GitHubClient(token="t").get_pr("octo", "repo", 2)
    assert pr.number == 2
    assert len(calls) == 2


def test_get_retries_on_transport_error_then_raises(monkeypatch, no_sleep):
    monkeypatch.setattr(ghmod.SETTINGS, "max_retries", 2)
    calls = _scripted(monkeypatch, [httpx.ConnectError("down"), httpx.ConnectError("still down")])
    with pytest.raises(httpx.ConnectError):
        GitHubClient(token="t").get_pr("octo", "repo", 2)
    assert len(calls) == 2


def test_merge_is_sent_once_and_errors_raise(monkeypatch, no_sleep):
    calls = _scripted(monkeypatch, [FakeResp(502, body={"message": "Bad gateway"}), FakeResp(200, body={"merged": True})])
    with pytest.raises(GitHubError) as info:
        GitHubClient(token="t").merge_pr("octo", "repo", 5)
    assert info.value.status_code == 502
    assert len(calls) == 1
    assert calls[0]["method"] == "PUT"


def test_merge_conflict_message(monkeypatch):
    _scripted(monkeypatch, [FakeResp(405, body={"message": "Pull Request is not mergeable"})])
    with pytest.raises(GitHubError) as info:
        GitHubClient(token="t").merge_pr("octo", "repo", 5)
    assert info.value.message == "Pull Request is not mergeable"


def test_unauthorized_get_raises(monkeypatch):
    _scripted(monkeypatch, [FakeResp(401, body={"message": "Bad credentials"})])
    with pytest.raises(GitHubError, match="Bad credentials"):
        GitHubClient(token="t").get_pr("octo", "repo", 1)


def test_load_repo_file(monkeypatch):
    content = base64.b64encode(b"label: promote\n").decode("ascii")
    _scripted(monkeypatch, [FakeResp(200, body={"encoding": "base64", "content": content}), FakeResp(404)])
    gh = GitHubClient(token="t")
    assert gh.load_repo_file("octo", "repo", ".github/gitflow.yml") == "label: promote\n"
    assert gh.load_repo_file("octo", "repo", ".github/gitflow.yaml") is None


def test_shared_installation_token_cache(monkeypatch):
    calls = {"post": 0}

    def fake_post(url, headers=None, timeout=None):
        calls["post"] += 1
        exp = (datetime.now(tz=timezone.utc) + timedelta(minutes=60)).isoformat()
        return FakeResp(status_code=201, body={"token": "t1", "expires_at": exp})

    monkeypatch.setattr("httpx.post", fake_post)
    # Avoid needing a real RSA key
    monkeypatch.setattr(GitHubClient, "_app_jwt", lambda self: "dummy")

    inst = 12345
    GitHubClient._tok_cache.pop(inst, None)

    h1 = GitHubClient(inst)._headers()
    h2 = GitHubClient(inst)._headers()
    assert h1["Authorization"] == h2["Authorization"] == "token t1"
    assert calls["post"] == 1


def test_token_refresh_inside_safety_margin(monkeypatch):
    calls = {"post": 0}

    def fake_post(url, headers=None, timeout=None):
        calls["post"] += 1
        if calls["post"] == 1:
            exp = (datetime.now(tz=timezone.utc) + timedelta(seconds=30)).isoformat()
            tok = "short"
        else:
            exp = (datetime.now(tz=timezone.utc) + timedelta(minutes=60)).isoformat()
            tok = "long"
        return FakeResp(status_code=201, body={"token": tok, "expires_at": exp})

    monkeypatch.setattr("httpx.post", fake_post)
    monkeypatch.setattr(GitHubClient, "_app_jwt", lambda self: "dummy")

    inst = 22222
    GitHubClient._tok_cache.pop(inst, None)

    GitHubClient(inst)._headers()
    h2 = GitHubClient(inst)._headers()
    assert calls["post"] == 2
    assert h2["Authorization"] == "token long"


def test_installation_token_without_installation_id_raises_value_error():
    gh = GitHubClient(token="t")
    with pytest.raises(ValueError, match="installation id"):
        gh._installation_token()
