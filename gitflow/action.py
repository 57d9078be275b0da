"""Run once for the event that triggered a GitHub Actions job.

Reads ``GITHUB_EVENT_NAME``, ``GITHUB_EVENT_PATH`` and ``GITHUB_REPOSITORY``
plus the ``INPUT_*`` variables, and exits non-zero when the run fails.
"""
import json
import logging
import os
import sys
from typing import Mapping, Optional

from .config import SETTINGS, load_gitflow_config
from .diagnostics import configure_logging, debug_payload
from .dispatcher import Dispatcher
from .github import GitHubClient
from .models import parse_event

logger = logging.getLogger(__name__)


def _fail(message: str) -> int:
    logger.error(message)
    # Workflow command understood by the Actions runner
    print(f"::error::{message}", flush=True)
    return 1


def _token(env: Mapping[str, str]) -> str:
    for key in ("INPUT_GITHUB-TOKEN", "INPUT_GITHUB_TOKEN", "GITHUB_TOKEN"):
        value = (env.get(key) or "").strip()
        if value:
            return value
    return SETTINGS.github_token


def main(environ: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if environ is None else environ
    debug = env.get("RUNNER_DEBUG") == "1" or (env.get("LOG_LEVEL") or "").upper() == "DEBUG"
    configure_logging("DEBUG" if debug else (env.get("LOG_LEVEL") or SETTINGS.log_level))

    token = _token(env)
    if not token:
        return _fail("Input required and not supplied: github-token")
    event_name = env.get("GITHUB_EVENT_NAME", "")
    repository = env.get("GITHUB_REPOSITORY", "")
    if "/" not in repository:
        return _fail(f"GITHUB_REPOSITORY must be owner/repo, got {repository!r}")
    owner, repo = repository.split("/", 1)

    event_path = env.get("GITHUB_EVENT_PATH", "")
    try:
        with open(event_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        return _fail(f"Could not read event payload {event_path!r}: {e}")
    debug_payload(logger, "payload", payload)

    try:
        event = parse_event(event_name, payload)
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        return _fail(f"Malformed {event_name} payload: {e}")
    if event is None:
        logger.info("Event %s is not handled. Skipping...", event_name)
        return 0

    cfg = load_gitflow_config(env)
    gh = GitHubClient(token=token)
    result = Dispatcher(gh, owner, repo, cfg).run(event)
    if not result.ok:
        return _fail(result.message)
    return 0


if __name__ == "__main__":
    sys.exit(main())
