"""
Binding a runner name to a repository (config.sh configure/remove) and the
remote runner lookups that back status and idempotent removal.
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from runner_auth import Credential, CredentialKind, CredentialProvider
from runner_config import (Config, ConflictError, InvalidFormat, RunnerError, RunnerIdentity,
                           TokenExpired, UpstreamError, logger)
from runner_exec import CommandRunner
from runner_github import GitHubApiError, GitHubClient

TOKEN_REJECTED_PATTERN = re.compile(
    r"token.{0,40}expired|expired.{0,40}token|unauthori[sz]ed|invalid.{0,20}token"
    r"|NotFound from 'POST [^']*runner-registration'|404 \(Not Found\)",
    re.IGNORECASE
)
CONFLICT_PATTERN = re.compile(r"already exists|exists with the same name", re.IGNORECASE)


@dataclass(frozen=True)
class RunnerHandle:
    name: str
    repository: str
    runner_dir: Path
    runner_id: Optional[int] = None
    labels: tuple = ()


class RegistrationClient:
    """
    Configures and removes the runner against GitHub. Every configure or
    remove call mints its own single-use token immediately beforehand.
    """
    PAGE_SIZE = 100

    def __init__(self, config: Config, credentials: CredentialProvider, github: GitHubClient,
                 commands: Optional[CommandRunner] = None):
        self.config = config
        self.credentials = credentials
        self.github = github
        self.commands = commands or CommandRunner()

    def repository_url(self, identity: RunnerIdentity) -> str:
        return f"{self.config.server_url}/{identity.repository}"

    def _fresh_token(self, kind: CredentialKind, credential: Optional[Credential]) -> Credential:
        if credential is None:
            return self.credentials.obtain(kind)
        if credential.kind != kind:
            raise InvalidFormat(f"Expected a {kind.value}, got {credential.kind.value}.")
        if credential.expired():
            raise TokenExpired(f"The supplied {kind.value} expired at {credential.expires_at}.")
        return credential

    def _classify_failure(self, action: str, error: RunnerError) -> RunnerError:
        message = str(error)
        if TOKEN_REJECTED_PATTERN.search(message):
            return TokenExpired(f"GitHub rejected the {action} token: {message}")
        if CONFLICT_PATTERN.search(message):
            return ConflictError(f"Runner name conflict during {action}: {message}")
        return UpstreamError(f"Runner {action} failed: {message}")

    def _config_sh(self, runner_dir: Path, args: List[str], action: str):
        script = runner_dir / "config.sh"
        if not script.exists():
            raise RunnerError(f"Runner configuration script not found at: {script}")

        cmd = self.commands.as_user(self.config.runner_user, [str(script)] + args)
        logger.info(f"Running: {self.commands.sanitize_args(cmd)}")
        try:
            self.commands.run(cmd, timeout=self.config.setup_timeout, cwd=runner_dir)
        except RunnerError as e:
            raise self._classify_failure(action, e)

    def register(self, identity: RunnerIdentity, runner_dir: Path,
                 credential: Optional[Credential] = None) -> RunnerHandle:
        """
        Configures the runner with replace semantics: an existing runner of the
        same name on the repository is superseded, never duplicated.
        """
        runner_dir = Path(runner_dir)
        token = self._fresh_token(CredentialKind.REGISTRATION_TOKEN, credential)

        args = [
            "--unattended",
            "--replace",
            "--url", self.repository_url(identity),
            "--token", token.token,
            "--name", identity.name,
            "--labels", ",".join(identity.labels),
            "--work", identity.work_directory,
        ]
        if identity.group:
            args.extend(["--runnergroup", identity.group])

        logger.info(f"Registering runner '{identity.name}' with {identity.repository}")
        logger.info(f"Labels: {','.join(identity.labels)}")
        self._config_sh(runner_dir, args, "registration")

        handle = RunnerHandle(
            name=identity.name,
            repository=identity.repository,
            runner_dir=runner_dir,
            runner_id=self.local_runner_id(runner_dir),
            labels=identity.labels,
        )
        logger.info(f"Runner '{identity.name}' registered (id={handle.runner_id}).")
        return handle

    def is_configured(self, runner_dir: Optional[Path]) -> bool:
        """Presence of the .runner file is the local registration marker."""
        return bool(runner_dir) and (Path(runner_dir) / ".runner").exists()

    def local_runner_id(self, runner_dir: Path) -> Optional[int]:
        path = Path(runner_dir) / ".runner"
        try:
            # config.sh writes the file with a BOM
            data = json.loads(path.read_text(encoding='utf-8-sig'))
        except FileNotFoundError:
            logger.warning(f"Registration file {path} was not written.")
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None
        return data.get("agentId")

    def unregister(self, identity: RunnerIdentity, runner_dir: Optional[Path]) -> bool:
        """
        Removes the registration. Succeeds when the local state is already
        gone; returns True if a registration was removed.
        """
        if self.is_configured(runner_dir):
            token = self._fresh_token(CredentialKind.REMOVAL_TOKEN, None)
            logger.info(f"Removing runner '{identity.name}' from {identity.repository}")
            self._config_sh(Path(runner_dir), ["remove", "--unattended", "--token", token.token], "removal")
            logger.info("Runner removed successfully")
            return True

        logger.warning(
            f"Local runner state not found{f' in {runner_dir}' if runner_dir else ''}; "
            "a registration may still exist on GitHub."
        )
        if not self.credentials.has_session():
            logger.warning("No GitHub session available; skipping remote cleanup.")
            return False

        remote = self.find_runner(identity)
        if remote is None:
            logger.info(f"Runner '{identity.name}' is not registered on GitHub.")
            return False

        self.delete_runner(identity, remote["id"])
        return True

    def list_runners(self, identity: RunnerIdentity) -> List[dict]:
        auth_token = self.credentials.session_token()
        url = self.github.repo_endpoint(identity.repository, "actions/runners")

        runners: List[dict] = []
        page = 1
        while True:
            data = self.github.execute_api_call(
                url, method="GET", params=f"per_page={self.PAGE_SIZE}&page={page}", auth_token=auth_token
            ) or {}
            batch = data.get("runners", [])
            runners.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                return runners
            page += 1

    def find_runner(self, identity: RunnerIdentity) -> Optional[dict]:
        for r in self.list_runners(identity):
            if r.get("name") == identity.name:
                logger.info(f"Runner found: ID={r.get('id')}, Status={r.get('status')}")
                return r
        return None

    def delete_runner(self, identity: RunnerIdentity, runner_id: int):
        auth_token = self.credentials.session_token()
        url = self.github.repo_endpoint(identity.repository, f"actions/runners/{runner_id}")
        try:
            self.github.execute_api_call(url, method="DELETE", auth_token=auth_token)
        except GitHubApiError as e:
            if e.status == 404:
                logger.info(f"Runner {runner_id} already removed.")
                return
            raise
        logger.info(f"Deleted stale registration of '{identity.name}' (id={runner_id}).")
