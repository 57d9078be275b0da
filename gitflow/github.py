import time
import base64
import logging
from typing import Any, Dict, List, Optional, Tuple
import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .config import SETTINGS
from .diagnostics import debug_payload
from .metrics import (
    config_load_failures_total,
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
    github_rate_limit_reset,
)
from .models import PullRequest

logger = logging.getLogger(__name__)

# Installation tokens are refreshed this many seconds before they expire.
TOKEN_SAFETY_MARGIN_SECONDS = 120


class GitHubError(RuntimeError):
    """Non-success response from the GitHub API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return resp.text


class GitHubClient:
    """Thin GitHub REST client.

    Authenticates with a static token when one is given, otherwise as the
    GitHub App installation ``installation_id``.
    """

    # installation_id -> (token, expiry epoch); shared across clients in the process
    _tok_cache: Dict[int, Tuple[str, float]] = {}

    def __init__(self, installation_id: Optional[int] = None, token: Optional[str] = None):
        self.installation_id = installation_id
        self._static_token = token
        self.base_url = SETTINGS.github_api_url
        self.app_id = SETTINGS.app_id
        self.private_key_pem = SETTINGS.app_private_key.encode("utf-8")
        if installation_id is None and not token:
            raise ValueError("GitHubClient needs either a token or an installation id")

    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key_pem, algorithm="RS256")

    def _installation_token(self) -> str:
        if self.installation_id is None:
            raise ValueError("installation token requested without an installation id")
        cached = self._tok_cache.get(self.installation_id)
        if cached and time.time() < cached[1] - TOKEN_SAFETY_MARGIN_SECONDS:
            return cached[0]
        jwt_ = self._app_jwt()
        url = f"{self.base_url}/app/installations/{self.installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {jwt_}",
            "Accept": "application/vnd.github+json",
        }
        endpoint = "POST /app/installations/{id}/access_tokens"
        start = time.perf_counter()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "github.request: method=POST path=%s installation=%s phase=token_exchange",
                _safe_url(url),
                self.installation_id,
            )
        resp = httpx.post(url, headers=headers, timeout=30)
        duration = time.perf_counter() - start
        github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        github_api_requests_total.labels(endpoint=endpoint, status=str(resp.status_code)).inc()
        resp.raise_for_status()
        data = resp.json()
        token = data.get("token")
        expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_at:
            dt = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            expiry = dt.timestamp()
        else:
            expiry = time.time() + 3600
        self._tok_cache[self.installation_id] = (token, expiry)
        return token

    def _headers(self) -> Dict[str, str]:
        token = self._static_token or self._installation_token()
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "gitflow-bot/1.0",
        }

    def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method} {path if path.startswith('/') else '/' + path}"
        # Only reads are retried; a create or merge is sent exactly once.
        idempotent = method.upper() == "GET"

        def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
            if not idempotent:
                return False
            if exc is not None:
                return True
            if resp is None:
                return False
            status = resp.status_code
            return status >= 500 or status in (429, 403)

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "github.request: method=%s path=%s installation=%s params=%s attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    self.installation_id,
                    _param_keys(params),
                    attempts,
                )
            try:
                resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=60)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._record_rate_limit(resp)
            if logger.isEnabledFor(logging.DEBUG):
                if resp is not None:
                    logger.debug(
                        "github.response: method=%s path=%s status=%s duration_ms=%d installation=%s rl_remaining=%s attempt=%s",
                        method.upper(),
                        _safe_url(url),
                        resp.status_code,
                        int(duration * 1000),
                        self.installation_id,
                        resp.headers.get("X-RateLimit-Remaining"),
                        attempts,
                    )
                else:
                    logger.debug(
                        "github.response_error: method=%s path=%s error=%s duration_ms=%d installation=%s attempt=%s",
                        method.upper(),
                        _safe_url(url),
                        exc,
                        int(duration * 1000),
                        self.installation_id,
                        attempts,
                    )
            if not should_retry(resp, exc) or attempts >= SETTINGS.max_retries:
                if exc is not None:
                    raise exc
                return resp  # type: ignore
            sleep_s = min(
                SETTINGS.backoff_base_seconds * (SETTINGS.backoff_factor ** (attempts - 1)),
                SETTINGS.max_backoff_seconds,
            )
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s installation=%s",
                    method.upper(),
                    _safe_url(url),
                    sleep_s,
                    attempts,
                    self.installation_id,
                )
            time.sleep(sleep_s)

    def _record_rate_limit(self, resp: httpx.Response) -> None:
        scope = str(self.installation_id) if self.installation_id is not None else "token"
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        # Malformed headers only cost us a gauge sample.
        try:
            if remaining is not None:
                github_rate_limit_remaining.labels(installation=scope).set(int(remaining))
            if reset is not None:
                github_rate_limit_reset.labels(installation=scope).set(int(reset))
        except ValueError:
            pass

    def _json(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None) -> Any:
        r = self.request(method, path, params=params, data=data)
        if r.status_code >= 400:
            raise GitHubError(r.status_code, _error_message(r))
        body = r.json()
        debug_payload(logger, f"github.body {method} {path}", body)
        return body

    # --- Pull request operations ---
    def list_open_prs(self, owner: str, repo: str, head: str, base: str) -> List[PullRequest]:
        """Open pull requests from ``owner:head`` into ``base``."""
        params = {"state": "open", "head": f"{owner}:{head}", "base": base, "per_page": 100}
        data = self._json("GET", f"/repos/{owner}/{repo}/pulls", params=params)
        return [PullRequest.from_api(p) for p in data]

    def create_pr(self, owner: str, repo: str, base: str, head: str, title: str) -> PullRequest:
        data = self._json("POST", f"/repos/{owner}/{repo}/pulls", data={"base": base, "head": head, "title": title})
        return PullRequest.from_api(data)

    def add_labels(self, owner: str, repo: str, number: int, labels: List[str]) -> List[str]:
        data = self._json("POST", f"/repos/{owner}/{repo}/issues/{number}/labels", data={"labels": labels})
        return [lbl.get("name") for lbl in data]

    def get_pr(self, owner: str, repo: str, number: int) -> PullRequest:
        return PullRequest.from_api(self._json("GET", f"/repos/{owner}/{repo}/pulls/{number}"))

    def merge_pr(self, owner: str, repo: str, number: int) -> Dict[str, Any]:
        """Merge ``number``. Any 2xx is a merge; the body is only kept for diagnostics."""
        r = self.request("PUT", f"/repos/{owner}/{repo}/pulls/{number}/merge")
        if r.status_code >= 400:
            raise GitHubError(r.status_code, _error_message(r))
        try:
            body = r.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def load_repo_file(self, owner: str, repo: str, path: str) -> Optional[str]:
        r = self.request("GET", f"/repos/{owner}/{repo}/contents/{path}")
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise GitHubError(r.status_code, _error_message(r))
        data = r.json()
        if isinstance(data, dict) and data.get("encoding") == "base64":
            try:
                return base64.b64decode(data.get("content", "")).decode("utf-8")
            except ValueError:
                config_load_failures_total.inc()
                logger.warning("Could not decode %s in %s/%s", path, owner, repo)
        return None
