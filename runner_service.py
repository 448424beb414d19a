"""
Host-side runner service: run-as account, directory ownership and the
systemd unit. Everything here is idempotent and regenerated from the
current configuration on every install.
"""

import grp
import os
import pwd
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from runner_config import Config, HostPermissionError, RunnerError, RunnerIdentity, logger
from runner_exec import CommandRunner

UNIT_PREFIX = "actions.runner"
MAX_UNIT_BASE = 80
SYSTEMCTL_TIMEOUT = 60
ACTIVE_STATES = ("active", "activating", "reloading")


@dataclass(frozen=True)
class ServiceUnit:
    name: str
    description: str
    working_directory: Path
    exec_start: str
    user: str
    group: str
    restart: str = "always"
    restart_sec: int = 10
    kill_mode: str = "process"
    kill_signal: str = "SIGTERM"
    timeout_stop_sec: str = "5min"
    after: str = "network-online.target"
    wanted_by: str = "multi-user.target"

    def sections(self) -> Dict[str, List[tuple]]:
        return {
            "Unit": [
                ("Description", self.description),
                ("After", self.after),
                ("Wants", self.after),
            ],
            "Service": [
                ("ExecStart", self.exec_start),
                ("User", self.user),
                ("Group", self.group),
                ("WorkingDirectory", str(self.working_directory)),
                ("KillMode", self.kill_mode),
                ("KillSignal", self.kill_signal),
                ("TimeoutStopSec", self.timeout_stop_sec),
                ("Restart", self.restart),
                ("RestartSec", str(self.restart_sec)),
            ],
            "Install": [
                ("WantedBy", self.wanted_by),
            ],
        }

    def render(self) -> str:
        blocks = []
        for section, entries in self.sections().items():
            lines = [f"[{section}]"] + [f"{key}={value}" for key, value in entries]
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks) + "\n"

    def to_dict(self) -> dict:
        return {"name": self.name, "user": self.user, "working_directory": str(self.working_directory)}


def unit_name(identity: RunnerIdentity) -> str:
    """Same naming as the runner's svc.sh: actions.runner.<owner>-<repo>.<name>."""
    base = f"{UNIT_PREFIX}.{identity.owner}-{identity.repo}.{identity.name}".replace(' ', '_')
    return f"{base[:MAX_UNIT_BASE]}.service"


class ServiceInstaller:
    """
    Creates the run-as identity, (re-)applies ownership and permissions,
    installs the unit and drives systemctl.
    """
    RUNNER_DIR_MODE = 0o755
    WORK_DIR_MODE = 0o750

    def __init__(self, config: Config, commands: Optional[CommandRunner] = None):
        self.config = config
        self.commands = commands or CommandRunner()

    def _systemctl(self, *args: str, check: bool = True) -> int:
        try:
            return self.commands.run(["systemctl", *args], timeout=SYSTEMCTL_TIMEOUT, check=check)
        except RunnerError as e:
            raise HostPermissionError(f"systemctl {' '.join(args)} failed: {e}")

    # --- identity ---
    def ensure_user(self) -> pwd.struct_passwd:
        """Check-then-create; an existing account is left as is."""
        user = self.config.runner_user
        try:
            entry = pwd.getpwnam(user)
            logger.debug(f"User {user} already exists.")
        except KeyError:
            logger.info(f"Creating runner user {user}...")
            try:
                self.commands.run([
                    "useradd", "--create-home",
                    "--home-dir", str(self.config.runner_home),
                    "--shell", "/bin/bash",
                    user,
                ], timeout=SYSTEMCTL_TIMEOUT)
                entry = pwd.getpwnam(user)
            except (RunnerError, KeyError) as e:
                raise HostPermissionError(f"Could not create user {user}: {e}")

        for group in self.config.extra_groups:
            try:
                members = grp.getgrnam(group).gr_mem
            except KeyError:
                logger.debug(f"Group {group} does not exist, skipping.")
                continue
            if user in members:
                continue
            try:
                self.commands.run(["usermod", "-aG", group, user], timeout=SYSTEMCTL_TIMEOUT)
                logger.info(f"Added {user} to group {group}")
            except RunnerError as e:
                raise HostPermissionError(f"Could not add {user} to group {group}: {e}")
        return entry

    def _chown_tree(self, root: Path, uid: int, gid: int):
        os.lchown(root, uid, gid)
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames + filenames:
                os.lchown(os.path.join(dirpath, name), uid, gid)

    def apply_permissions(self, artifact_path: Path, entry: pwd.struct_passwd):
        """Re-applied on every install; ownership drift is cheap to correct."""
        work_dir = self.config.work_dir_path(artifact_path)
        dirs = [
            (self.config.runner_home, None),
            (artifact_path, self.RUNNER_DIR_MODE),
            (work_dir, self.WORK_DIR_MODE),
        ]
        try:
            for path, mode in dirs:
                path.mkdir(parents=True, exist_ok=True)
                if mode is not None:
                    path.chmod(mode)

            if os.geteuid() == entry.pw_uid:
                logger.debug("Running as the runner user; ownership already correct.")
                return
            for path in (artifact_path, work_dir):
                self._chown_tree(path, entry.pw_uid, entry.pw_gid)
            os.lchown(self.config.runner_home, entry.pw_uid, entry.pw_gid)
        except OSError as e:
            raise HostPermissionError(f"Failed to set ownership/permissions under {artifact_path}: {e}")
        logger.info(f"Ownership and permissions applied for {entry.pw_name} on {artifact_path}")

    def prepare(self, identity: RunnerIdentity, artifact_path: Path) -> pwd.struct_passwd:
        entry = self.ensure_user()
        self.apply_permissions(Path(artifact_path), entry)
        return entry

    # --- unit ---
    def unit_for(self, identity: RunnerIdentity, artifact_path: Path) -> ServiceUnit:
        user = self.config.runner_user
        try:
            group = grp.getgrgid(pwd.getpwnam(user).pw_gid).gr_name
        except KeyError:
            group = user
        return ServiceUnit(
            name=unit_name(identity),
            description=f"GitHub Actions Runner ({identity.repository}.{identity.name})",
            working_directory=Path(artifact_path),
            exec_start=str(Path(artifact_path) / "run.sh"),
            user=user,
            group=group,
        )

    def unit_path(self, unit: ServiceUnit) -> Path:
        return self.config.systemd_dir / unit.name

    def write_unit(self, unit: ServiceUnit) -> Path:
        """Writes the full unit definition, replacing any previous file."""
        path = self.unit_path(unit)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{unit.name}.", dir=path.parent)
            with os.fdopen(fd, 'w') as f:
                f.write(unit.render())
            os.chmod(tmp, 0o644)
            os.replace(tmp, path)
        except OSError as e:
            raise HostPermissionError(f"Could not write unit file {path}: {e}")
        logger.info(f"Wrote service unit {path}")
        return path

    def install(self, identity: RunnerIdentity, artifact_path: Path) -> ServiceUnit:
        self.prepare(identity, artifact_path)
        unit = self.unit_for(identity, artifact_path)
        self.write_unit(unit)
        self._systemctl("daemon-reload")
        self._systemctl("enable", unit.name)
        logger.info(f"Service {unit.name} installed and enabled.")
        return unit

    def is_installed(self, unit: ServiceUnit) -> bool:
        return self.unit_path(unit).exists()

    def status(self, unit: ServiceUnit) -> str:
        if not self.is_installed(unit):
            return "not-installed"
        try:
            _, output = self.commands.capture(["systemctl", "is-active", unit.name])
        except RunnerError as e:
            logger.warning(f"Could not query {unit.name}: {e}")
            return "unknown"
        return output.strip() or "unknown"

    def start(self, unit: ServiceUnit):
        """Starting an active unit is a success, not an error."""
        if self.status(unit) == "active":
            logger.info(f"Service {unit.name} is already running.")
            return
        self._systemctl("start", unit.name)
        logger.info(f"Service {unit.name} started.")

    def stop(self, unit: ServiceUnit):
        if self.status(unit) not in ACTIVE_STATES:
            logger.info(f"Service {unit.name} is not running.")
            return
        self._systemctl("stop", unit.name)
        logger.info(f"Service {unit.name} stopped.")

    def uninstall(self, unit: ServiceUnit) -> bool:
        if not self.is_installed(unit):
            logger.info(f"Service {unit.name} is not installed.")
            return False
        self.stop(unit)
        self._systemctl("disable", unit.name, check=False)
        try:
            self.unit_path(unit).unlink(missing_ok=True)
        except OSError as e:
            raise HostPermissionError(f"Could not remove unit file: {e}")
        self._systemctl("daemon-reload")
        logger.info(f"Service {unit.name} removed.")
        return True
