import os
import logging
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

EventKind = Literal["push", "pull_request_review", "check_run"]
EVENT_KINDS: FrozenSet[str] = frozenset(get_args(EventKind))


class Settings:
    # GitHub App config (webhook mode)
    app_id: str
    app_private_key: str  # PEM contents (loaded from file path or env)
    webhook_secret: str

    # Static token (action mode)
    github_token: str

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # General
    github_api_url: str
    service_version: str
    repo_config_path: str

    # HTTP retry/backoff
    max_retries: int
    backoff_base_seconds: float
    backoff_factor: float
    max_backoff_seconds: int

    def __init__(self) -> None:
        self.app_id = os.getenv("APP_ID", "").strip()
        # APP_PRIVATE_KEY is a filesystem path to the PEM file, or the PEM string itself.
        apk_env = os.getenv("APP_PRIVATE_KEY", "").strip()
        pem_contents = apk_env
        if apk_env and os.path.isfile(apk_env):
            with open(apk_env, "r", encoding="utf-8") as f:
                pem_contents = f.read().strip()
        self.app_private_key = pem_contents
        self.webhook_secret = os.getenv("WEBHOOK_SECRET", "").strip()
        self.github_token = os.getenv("GITHUB_TOKEN", "").strip()

        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.service_version = os.getenv("SERVICE_VERSION", "dev")
        self.repo_config_path = os.getenv("REPO_CONFIG_PATH", ".github/gitflow.yml")

        self.max_retries = int(os.getenv("MAX_RETRIES", "3"))
        self.backoff_base_seconds = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
        self.backoff_factor = float(os.getenv("BACKOFF_FACTOR", "2"))
        self.max_backoff_seconds = int(os.getenv("MAX_BACKOFF_SECONDS", "30"))


SETTINGS = Settings()


class BranchMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    targets: Dict[str, str] = Field(default_factory=dict)


class AutoMergePolicy(BaseModel):
    """Which event kinds may trigger an automatic merge."""

    model_config = ConfigDict(frozen=True)

    always: bool = False
    events: FrozenSet[EventKind] = frozenset()

    @classmethod
    def parse(cls, raw: Optional[str]) -> "AutoMergePolicy":
        value = (raw or "").strip()
        if value.lower() == "true":
            return cls(always=True)
        if not value or value.lower() == "false":
            return cls()
        events = set()
        for part in value.split(","):
            name = part.strip()
            if not name:
                continue
            if name not in EVENT_KINDS:
                logger.warning("Ignoring unknown auto-merge event kind %r", name)
                continue
            events.add(name)
        return cls(events=frozenset(events))


class GitflowConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    release_branch: str = "release"
    dev_branch: str = "dev"
    master_branch: str = "master"
    master_target: str = "dev"
    release_target: str = "master"
    label: str = "gitflow"
    auto_merge: AutoMergePolicy = AutoMergePolicy(always=True)
    require_merge: bool = False

    @property
    def branch_mapping(self) -> BranchMapping:
        return BranchMapping(
            targets={
                self.release_branch: self.release_target,
                self.master_branch: self.master_target,
            }
        )


def _get_input(env: Mapping[str, str], name: str, fallback: str) -> str:
    # GitHub keeps hyphens in INPUT_* names; accept the underscore spelling too.
    upper = name.replace(" ", "_").upper()
    for key in (f"INPUT_{upper}", f"INPUT_{upper.replace('-', '_')}"):
        value = (env.get(key) or "").strip()
        if value:
            return value
    return fallback


def _build_config(values: Dict[str, str]) -> GitflowConfig:
    """Resolve raw input values into a config; target defaults follow the renamed branches."""
    release_branch = values.get("release") or "release"
    dev_branch = values.get("dev") or "dev"
    master_branch = values.get("master") or "master"
    return GitflowConfig(
        release_branch=release_branch,
        dev_branch=dev_branch,
        master_branch=master_branch,
        master_target=values.get("master-target") or dev_branch,
        release_target=values.get("release-target") or master_branch,
        label=values.get("label") or "gitflow",
        auto_merge=AutoMergePolicy.parse(values.get("auto-merge") or "true"),
        require_merge=(values.get("require-merge") or "false") == "true",
    )


INPUT_NAMES = ("release", "dev", "master", "master-target", "release-target", "label", "auto-merge", "require-merge")


def load_gitflow_config(env: Optional[Mapping[str, str]] = None) -> GitflowConfig:
    env = os.environ if env is None else env
    values = {name: _get_input(env, name, "") for name in INPUT_NAMES}
    return _build_config(values)


def _config_values(cfg: GitflowConfig) -> Dict[str, str]:
    policy = cfg.auto_merge
    if policy.always:
        auto_merge = "true"
    else:
        auto_merge = ",".join(sorted(policy.events)) or "false"
    return {
        "release": cfg.release_branch,
        "dev": cfg.dev_branch,
        "master": cfg.master_branch,
        "master-target": cfg.master_target,
        "release-target": cfg.release_target,
        "label": cfg.label,
        "auto-merge": auto_merge,
        "require-merge": "true" if cfg.require_merge else "false",
    }


def parse_simple_yaml(text: str) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if ':' not in line:
            continue
        k, v = line.split(':', 1)
        k = k.strip()
        v = v.strip().strip('"').strip("'")
        if v.lower() in ("true", "false"):
            cfg[k] = v.lower() == "true"
        else:
            cfg[k] = v
    return cfg


def load_repo_config(gh: Any, owner: str, repo: str, base: GitflowConfig, path: Optional[str] = None) -> GitflowConfig:
    """Overlay ``.github/gitflow.yml`` (or ``.yaml``) from the repository onto ``base``.

    Keys use the action input names; underscores are accepted in place of hyphens.
    Targets left unset in the file keep their base value even when a branch is renamed.
    """
    path = path or SETTINGS.repo_config_path
    candidates = [path]
    if path.endswith(".yml"):
        candidates.append(path[:-4] + ".yaml")
    content = None
    for candidate in candidates:
        content = gh.load_repo_file(owner, repo, candidate)
        if content:
            logger.debug("Loaded repository config %s for %s/%s", candidate, owner, repo)
            break
    if not content:
        return base
    user = parse_simple_yaml(content)
    values = _config_values(base)
    for key, value in user.items():
        name = key.replace("_", "-")
        if name not in INPUT_NAMES:
            logger.debug("Ignoring unknown repository config key %r", key)
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        values[name] = str(value)
    return _build_config(values)
