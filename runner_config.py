"""
Configuration, error taxonomy and logging for the runner lifecycle manager.

The configuration is read once from a flat KEY=VALUE file (the provisioning
.env file) with process environment overrides, validated, and then passed
by reference into every component. Nothing downstream reads os.environ.
"""

import logging
import os
import platform
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from packaging.version import InvalidVersion, Version

__version__ = "1.2.0"

LOG_FORMAT = '%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

logger = logging.getLogger("runner-ctl")


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT
    )


# --- Errors ---
class RunnerError(Exception):
    """Base exception for runner controller errors."""
    pass

class ConfigError(RunnerError):
    """Configuration file is missing, unparsable or invalid."""
    pass

class AuthError(RunnerError):
    """Credential is missing or the upstream session is not authenticated."""
    pass

class InvalidFormat(AuthError):
    """Token failed the local shape check."""
    pass

class UpstreamError(RunnerError):
    """Network or GitHub API failure."""
    pass

class TokenExpired(UpstreamError):
    """Registration token expired or was rejected by the server."""
    pass

class ConflictError(RunnerError):
    """Runner name collision that replace semantics did not resolve."""
    pass

class DownloadError(RunnerError):
    pass

class ChecksumMismatch(RunnerError):
    """Artifact digest could not be located or does not match."""
    pass

class ExtractError(RunnerError):
    pass

class HostPermissionError(RunnerError):
    """OS-level user, directory or service unit operation failed."""
    pass

class LockError(RunnerError):
    pass

class Interrupted(RunnerError):
    pass


# --- Data model ---
@dataclass(frozen=True)
class RunnerIdentity:
    """Stable identity of a runner; the same name replaces a prior registration."""
    name: str
    repository: str
    labels: Tuple[str, ...] = ()
    work_directory: str = "_work"
    group: str = ""

    @property
    def owner(self) -> str:
        return self.repository.split('/', 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split('/', 1)[1]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "repository": self.repository,
            "labels": list(self.labels),
            "work_directory": self.work_directory,
            "group": self.group,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "RunnerIdentity":
        return cls(
            name=data["name"],
            repository=data["repository"],
            labels=tuple(data.get("labels", ())),
            work_directory=data.get("work_directory", "_work"),
            group=data.get("group", ""),
        )


@dataclass(frozen=True)
class DeployTarget:
    """Deployment host settings; consumed by the external deploy step only."""
    host: Optional[str] = None
    user: str = "deploy"
    port: int = 22
    path: str = "/var/www/apps"

    @property
    def configured(self) -> bool:
        return bool(self.host)


def parse_labels(value: str) -> Tuple[str, ...]:
    """Comma separated labels as an ordered set."""
    labels: List[str] = []
    for label in value.split(','):
        label = label.strip()
        if label and label not in labels:
            labels.append(label)
    return tuple(labels)


def parse_env_file(path: Path) -> Dict[str, str]:
    """
    Parses a flat KEY=VALUE file.
    Comments, blank lines and a leading 'export ' are accepted; surrounding
    quotes on values are stripped.
    """
    values: Dict[str, str] = {}
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except OSError as e:
        raise ConfigError(f"Could not read configuration file {path}: {e}")

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        if '=' not in line:
            raise ConfigError(f"{path}:{lineno}: expected KEY=VALUE, got '{raw}'")

        key, value = line.split('=', 1)
        key = key.strip()
        value = value.strip()
        if not Config.KEY_PATTERN.match(key):
            raise ConfigError(f"{path}:{lineno}: invalid key '{key}'")
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        values[key] = value
    return values


def host_platform() -> Tuple[str, str]:
    """Maps the host to the runner release naming (os, arch)."""
    system = platform.system()
    machine = platform.machine().lower()
    os_name = {"Linux": "linux", "Darwin": "osx"}.get(system, system.lower())
    arch = {
        "x86_64": "x64",
        "amd64": "x64",
        "aarch64": "arm64",
        "arm64": "arm64",
        "armv7l": "arm",
    }.get(machine, machine)
    return os_name, arch


def normalize_version(version: str) -> str:
    """'v2.319.1' -> '2.319.1'. Raises ConfigError for unparsable versions."""
    raw = version.strip()
    try:
        return str(Version(raw[1:] if raw.lower().startswith('v') else raw))
    except InvalidVersion:
        raise ConfigError(f"Invalid runner version '{version}'")


# --- Configuration ---
@dataclass(frozen=True)
class Config:
    """
    Holds configuration derived from the provisioning file and environment.
    Responsible for validating inputs and providing paths.
    """
    repository: str = ""
    runner_name: str = ""
    runner_labels: Tuple[str, ...] = ("self-hosted", "linux", "x64")
    runner_work_dir: str = "_work"
    runner_group: str = ""

    # Credentials
    github_pat: Optional[str] = None
    client_id: Optional[str] = None
    app_key_path: Optional[str] = None
    use_gh_cli: bool = True

    # Release
    runner_version: str = "latest"
    runner_os: str = field(default_factory=lambda: host_platform()[0])
    runner_arch: str = field(default_factory=lambda: host_platform()[1])

    # Host layout
    runner_user: str = "github-runner"
    runner_home: Path = Path("/home/github-runner")
    runner_root: Path = Path("/home/github-runner/actions-runner")
    state_dir: Path = Path("/var/lib/bldr-runner")
    systemd_dir: Path = Path("/etc/systemd/system")
    extra_groups: Tuple[str, ...] = ("docker",)

    # Endpoints
    api_url: str = "https://api.github.com"
    server_url: str = "https://github.com"

    # Timeouts & retries
    api_timeout: float = 10.0
    download_timeout: float = 300.0
    download_retries: int = 3
    download_backoff: float = 1.5
    setup_timeout: int = 120

    deploy: DeployTarget = field(default_factory=DeployTarget)

    config_path: Optional[Path] = None

    NAME_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')
    LABEL_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')
    REPOSITORY_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$')
    KEY_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

    KNOWN_KEYS = (
        "GITHUB_REPOSITORY", "RUNNER_NAME", "RUNNER_LABELS", "RUNNER_WORK_DIRECTORY",
        "RUNNER_GROUP", "GITHUB_PAT", "GITHUB_TOKEN", "GITHUB_CLIENT_ID",
        "GITHUB_APP_KEY_PATH", "RUNNER_USE_GH_CLI", "RUNNER_VERSION", "RUNNER_OS",
        "RUNNER_ARCH", "RUNNER_USER", "RUNNER_HOME", "RUNNER_ROOT", "RUNNER_STATE_DIR",
        "SYSTEMD_UNIT_DIR", "RUNNER_EXTRA_GROUPS", "GITHUB_API_URL", "GITHUB_SERVER_URL",
        "GITHUB_API_TIMEOUT", "RUNNER_DOWNLOAD_TIMEOUT", "RUNNER_DOWNLOAD_RETRIES",
        "RUNNER_DOWNLOAD_BACKOFF", "RUNNER_SETUP_TIMEOUT", "PRODUCTION_HOST",
        "PRODUCTION_USER", "PRODUCTION_PORT", "PRODUCTION_PATH",
    )

    @classmethod
    def load(cls, path, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Reads the KEY=VALUE file at path; environment values take precedence."""
        path = Path(path)
        values = parse_env_file(path)

        environ = os.environ if environ is None else environ
        for key in cls.KNOWN_KEYS:
            if environ.get(key):
                values[key] = environ[key]

        config = cls.from_mapping(values, config_path=path)
        logger.debug(f"Loaded configuration from {path}")
        return config

    @classmethod
    def from_mapping(cls, values: Mapping[str, str], config_path: Optional[Path] = None) -> "Config":
        get = values.get

        user = get("RUNNER_USER") or "github-runner"
        home = Path(get("RUNNER_HOME") or f"/home/{user}")
        root = Path(get("RUNNER_ROOT") or home / "actions-runner")
        os_name, arch = host_platform()

        deploy = DeployTarget(
            host=get("PRODUCTION_HOST") or None,
            user=get("PRODUCTION_USER") or "deploy",
            port=_as_int("PRODUCTION_PORT", get("PRODUCTION_PORT"), 22),
            path=get("PRODUCTION_PATH") or "/var/www/apps",
        )

        return cls(
            repository=get("GITHUB_REPOSITORY", ""),
            runner_name=get("RUNNER_NAME", ""),
            runner_labels=parse_labels(get("RUNNER_LABELS") or "self-hosted,linux,x64"),
            runner_work_dir=get("RUNNER_WORK_DIRECTORY") or "_work",
            runner_group=get("RUNNER_GROUP", ""),
            github_pat=get("GITHUB_PAT") or get("GITHUB_TOKEN") or None,
            client_id=get("GITHUB_CLIENT_ID") or None,
            app_key_path=get("GITHUB_APP_KEY_PATH") or None,
            use_gh_cli=_as_bool(get("RUNNER_USE_GH_CLI"), True),
            runner_version=get("RUNNER_VERSION") or "latest",
            runner_os=get("RUNNER_OS") or os_name,
            runner_arch=get("RUNNER_ARCH") or arch,
            runner_user=user,
            runner_home=home,
            runner_root=root,
            state_dir=Path(get("RUNNER_STATE_DIR") or "/var/lib/bldr-runner"),
            systemd_dir=Path(get("SYSTEMD_UNIT_DIR") or "/etc/systemd/system"),
            extra_groups=parse_labels(get("RUNNER_EXTRA_GROUPS", "docker")),
            api_url=(get("GITHUB_API_URL") or "https://api.github.com").rstrip('/'),
            server_url=(get("GITHUB_SERVER_URL") or "https://github.com").rstrip('/'),
            api_timeout=_as_float("GITHUB_API_TIMEOUT", get("GITHUB_API_TIMEOUT"), 10.0),
            download_timeout=_as_float("RUNNER_DOWNLOAD_TIMEOUT", get("RUNNER_DOWNLOAD_TIMEOUT"), 300.0),
            download_retries=_as_int("RUNNER_DOWNLOAD_RETRIES", get("RUNNER_DOWNLOAD_RETRIES"), 3),
            download_backoff=_as_float("RUNNER_DOWNLOAD_BACKOFF", get("RUNNER_DOWNLOAD_BACKOFF"), 1.5),
            setup_timeout=_as_int("RUNNER_SETUP_TIMEOUT", get("RUNNER_SETUP_TIMEOUT"), 120),
            deploy=deploy,
            config_path=config_path,
        )

    @property
    def identity(self) -> RunnerIdentity:
        return RunnerIdentity(
            name=self.runner_name,
            repository=self.repository,
            labels=self.runner_labels,
            work_directory=self.runner_work_dir,
            group=self.runner_group,
        )

    @property
    def has_app_auth(self) -> bool:
        return bool(self.client_id and self.app_key_path)

    def validate(self):
        """Validates critical configuration presence and shape."""
        if not self.repository:
            raise ConfigError("GITHUB_REPOSITORY is required.")
        if not self.REPOSITORY_PATTERN.match(self.repository):
            raise ConfigError(f"Invalid GITHUB_REPOSITORY '{self.repository}'. Expected 'owner/repo'.")

        if not self.runner_name:
            raise ConfigError("RUNNER_NAME is required.")
        if not self.NAME_PATTERN.match(self.runner_name):
            raise ConfigError(
                f"Invalid RUNNER_NAME '{self.runner_name}'. "
                "Allowed characters: a-z, A-Z, 0-9, '-', '_', '.'"
            )

        if self.runner_group and not self.NAME_PATTERN.match(self.runner_group):
            raise ConfigError(
                f"Invalid RUNNER_GROUP '{self.runner_group}'. "
                "Allowed characters: a-z, A-Z, 0-9, '-', '_', '.'"
            )

        for label in self.runner_labels:
            if not self.LABEL_PATTERN.match(label):
                raise ConfigError(
                    f"Invalid label '{label}' in RUNNER_LABELS. "
                    "Allowed characters: a-z, A-Z, 0-9, '-', '_', '.'"
                )

        if not self.runner_work_dir or '\n' in self.runner_work_dir:
            raise ConfigError("RUNNER_WORK_DIRECTORY must be a non-empty path.")

        if not self.NAME_PATTERN.match(self.runner_user):
            raise ConfigError(f"Invalid RUNNER_USER '{self.runner_user}'.")

        if self.runner_version != "latest":
            normalize_version(self.runner_version)

        if self.has_app_auth and not Path(self.app_key_path).exists():
            raise ConfigError(f"Private Key not found at: {self.app_key_path}")

        for name in ("api_timeout", "download_timeout", "download_backoff", "setup_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive.")
        if self.download_retries < 0:
            raise ConfigError("RUNNER_DOWNLOAD_RETRIES must not be negative.")

        if not 1 <= self.deploy.port <= 65535:
            raise ConfigError(f"Invalid PRODUCTION_PORT '{self.deploy.port}'.")

    def work_dir_path(self, runner_dir: Path) -> Path:
        """Work directory; relative values live under the runner directory."""
        work = Path(self.runner_work_dir)
        return work if work.is_absolute() else runner_dir / work


def _as_int(key: str, value: Optional[str], default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{value}'")

def _as_float(key: str, value: Optional[str], default: float) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{value}'")

def _as_bool(value: Optional[str], default: bool) -> bool:
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
