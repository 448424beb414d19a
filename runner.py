#!/usr/bin/env python3
"""
Self-Hosted GitHub Actions Runner Lifecycle Manager

Provisions a self-hosted runner on a Linux host: credential, verified runner
download, registration, systemd service.

ALGORITHM:
==========

1. COMMON INITIALIZATION (all commands):
   - Load the KEY=VALUE configuration file (default: .env), apply environment
     overrides and validate it. Parse failures are fatal (exit 1).
   - Take the per-runner lock ({state_dir}/{name}.lock) for mutating commands.

2. REGISTER (./runner.py register):
   Idle -> CredentialAcquired -> ArtifactReady -> Registered -> ServiceInstalled -> Running
   - Resolve an authenticated GitHub session (PAT, GitHub App or gh CLI)
   - Download the runner release, verify its SHA-256 against the release
     notes, extract atomically into RUNNER_ROOT
   - Create the run-as user and fix ownership
   - Mint a fresh registration token and run config.sh --replace
   - Regenerate and enable the systemd unit, start it
   After every stage the state file records the last completed stage.
   Nothing is rolled back on failure; re-running is idempotent.

3. START (./runner.py start):
   - Requires a persisted registration of the same name and repository
   - Re-installs the unit if it is missing, starts it (no-op when running)

4. STATUS (./runner.py status [--json]):
   - Persisted stage, service state, local and remote registration

5. UNREGISTER (./runner.py unregister):
   - Stop and remove the unit, remove the registration (mints a removal
     token; falls back to deleting the remote runner by id when local state
     is gone), reset the state to Idle. The runner files and the OS user stay.

EXIT CODES:
===========
  0   - Success
  1   - Configuration, validation or fatal error (nothing completed)
  2   - Partial failure: some stages completed, see "Last completed stage"
  130 - Interrupted by SIGINT/SIGTERM
"""

import argparse
import errno
import fcntl
import json
import os
import signal
import sys
import tempfile
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, List, Optional

from runner_artifact import ArtifactFetcher
from runner_auth import CredentialProvider
from runner_config import (AuthError, Config, Interrupted, LockError, RunnerError,
                           RunnerIdentity, UpstreamError, __version__, logger, setup_logging)
from runner_exec import CommandRunner
from runner_github import GitHubClient
from runner_registration import RegistrationClient
from runner_service import ServiceInstaller

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
EXIT_INTERRUPTED = 130


class SignalHandler:
    """
    Context manager for handling system signals (SIGINT, SIGTERM).
    Restores original handlers upon exit.
    """
    def __init__(self):
        self.shutdown_requested = False
        self._original_sigint = None
        self._original_sigterm = None

    def __enter__(self):
        self._original_sigint = signal.getsignal(signal.SIGINT)
        self._original_sigterm = signal.getsignal(signal.SIGTERM)

        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        signal.signal(signal.SIGINT, self._original_sigint)
        signal.signal(signal.SIGTERM, self._original_sigterm)

    def _handler(self, signum: int, frame: Any):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info(f"Received signal {name}. Stopping after the current step...")

        self.shutdown_requested = True


class Stage(IntEnum):
    """Lifecycle stages, in order of completion."""
    IDLE = 0
    CREDENTIAL_ACQUIRED = 1
    ARTIFACT_READY = 2
    REGISTERED = 3
    SERVICE_INSTALLED = 4
    RUNNING = 5

    @property
    def label(self) -> str:
        return self.name.lower()


class LifecycleError(RunnerError):
    """A lifecycle command failed; carries what had already been done."""

    def __init__(self, last_stage: Stage, completed: List[str], cause: Exception):
        super().__init__(str(cause))
        self.last_stage = last_stage
        self.completed = list(completed)
        self.cause = cause

    @property
    def exit_code(self) -> int:
        if isinstance(self.cause, Interrupted):
            return EXIT_INTERRUPTED
        return EXIT_PARTIAL if self.completed else EXIT_FATAL


class RunnerLock:
    """Exclusive, non-blocking flock keyed by runner name."""

    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None

    def __enter__(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise LockError(f"Another operation holds {self.path}; try again later.")
            raise
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None


class StateStore:
    """
    Last completed stage and bound identity, kept as JSON so status and
    unregister need not re-derive them.
    """

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Optional[dict]:
        try:
            return json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return None

    def save(self, **fields) -> dict:
        """Merges fields into the record and writes it atomically."""
        record = self.load() or {}
        record.update(fields)
        record["updated_at"] = datetime.now(timezone.utc).isoformat()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        with os.fdopen(fd, 'w') as f:
            json.dump(record, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)
        return record

    @staticmethod
    def stage_of(record: Optional[dict]) -> Stage:
        if not record:
            return Stage.IDLE
        try:
            return Stage[str(record.get("stage", "idle")).upper()]
        except KeyError:
            return Stage.IDLE


class LifecycleOrchestrator:
    """
    Sequences credential, artifact, registration and service stages.
    Owns the stage bookkeeping; the other components are stateless.
    """

    def __init__(self, config: Config, credentials: CredentialProvider, fetcher: ArtifactFetcher,
                 registration: RegistrationClient, installer: ServiceInstaller,
                 store: Optional[StateStore] = None, lock: Optional[RunnerLock] = None):
        self.config = config
        self.credentials = credentials
        self.fetcher = fetcher
        self.registration = registration
        self.installer = installer
        self.store = store or StateStore(config.state_dir / f"{config.runner_name}.json")
        self.lock = lock or RunnerLock(config.state_dir / f"{config.runner_name}.lock")

    @classmethod
    def build(cls, config: Config, checksum_retries: int = 0) -> "LifecycleOrchestrator":
        commands = CommandRunner()
        github = GitHubClient(config)
        credentials = CredentialProvider(config, github, commands)
        return cls(
            config,
            credentials,
            ArtifactFetcher(config, github, checksum_retries=checksum_retries),
            RegistrationClient(config, credentials, github, commands),
            ServiceInstaller(config, commands),
        )

    @property
    def identity(self) -> RunnerIdentity:
        return self.config.identity

    def _runner_dir(self, record: Optional[dict]) -> Optional[Path]:
        if record and record.get("runner_dir"):
            return Path(record["runner_dir"])
        return None

    def _checkpoint(self, signals: SignalHandler):
        if signals.shutdown_requested:
            raise Interrupted("Interrupted by signal.")

    def register(self) -> dict:
        """Drives Idle -> Running. Earlier side effects stay in place on failure."""
        identity = self.identity
        stage = Stage.IDLE
        completed: List[str] = []

        def advance(new_stage: Stage, **fields):
            nonlocal stage
            stage = new_stage
            completed.append(new_stage.label)
            self.store.save(stage=new_stage.label, **fields)
            logger.info(f"Stage complete: {new_stage.label}")

        with self.lock, SignalHandler() as signals:
            self.fetcher.interrupted = lambda: signals.shutdown_requested
            try:
                self.credentials.session_token()
                previous = self.store.load()
                bound = (previous or {}).get("identity") or {}
                rebind = {}
                if bound.get("name") != identity.name or bound.get("repository") != identity.repository:
                    # registration of another identity does not carry over
                    rebind = {"registered": False, "runner_id": None, "unit": None}
                advance(Stage.CREDENTIAL_ACQUIRED, identity=identity.to_dict(), **rebind)
                self._checkpoint(signals)

                unit = self.installer.unit_for(identity, self._runner_dir(previous) or self.config.runner_root)
                if self.installer.status(unit) == "active":
                    logger.info("Stopping the running service before replacing runner files...")
                    self.installer.stop(unit)

                runner_dir, release = self.fetcher.fetch(self.config.runner_version, self.config.runner_root)
                advance(Stage.ARTIFACT_READY, runner_dir=str(runner_dir), version=release.version)
                self._checkpoint(signals)

                self.installer.prepare(identity, runner_dir)
                handle = self.registration.register(identity, runner_dir)
                advance(Stage.REGISTERED, registered=True, runner_id=handle.runner_id)
                self._checkpoint(signals)

                unit = self.installer.install(identity, runner_dir)
                advance(Stage.SERVICE_INSTALLED, unit=unit.name)
                self._checkpoint(signals)

                self.installer.start(unit)
                advance(Stage.RUNNING)
            except RunnerError as e:
                raise LifecycleError(stage, completed, e)

        logger.info(f"Runner '{identity.name}' is registered with {identity.repository} and running.")
        return self.store.load() or {}

    def start(self) -> dict:
        """Starts the unit of a runner registered earlier; never an unregistered one."""
        identity = self.identity

        with self.lock:
            record = self.store.load()
            stage = self.store.stage_of(record)
            bound = (record or {}).get("identity") or {}
            if (stage < Stage.REGISTERED or not record.get("registered")
                    or bound.get("name") != identity.name
                    or bound.get("repository") != identity.repository):
                raise LifecycleError(stage, [], RunnerError(
                    f"Runner '{identity.name}' is not registered with {identity.repository}; "
                    "run 'register' first."
                ))

            runner_dir = self._runner_dir(record)
            completed: List[str] = []
            try:
                unit = self.installer.unit_for(identity, runner_dir)
                if not self.installer.is_installed(unit):
                    unit = self.installer.install(identity, runner_dir)
                    stage = Stage.SERVICE_INSTALLED
                    completed.append(stage.label)
                    self.store.save(stage=stage.label, unit=unit.name)
                self.installer.start(unit)
                self.store.save(stage=Stage.RUNNING.label)
            except RunnerError as e:
                raise LifecycleError(stage, completed, e)

        return self.store.load() or {}

    def status(self) -> dict:
        identity = self.identity
        record = self.store.load()
        runner_dir = self._runner_dir(record)
        unit = self.installer.unit_for(identity, runner_dir or self.config.runner_root)

        remote: Any
        try:
            found = self.registration.find_runner(identity)
            remote = {"id": found.get("id"), "status": found.get("status"), "busy": found.get("busy")} if found else None
        except (AuthError, UpstreamError) as e:
            logger.warning(f"Failed to verify runner status: {e}")
            remote = "unknown"

        deploy = self.config.deploy
        return {
            "name": identity.name,
            "repository": identity.repository,
            "labels": list(identity.labels),
            "stage": self.store.stage_of(record).label,
            "registered": bool(record and record.get("registered")),
            "runner_dir": str(runner_dir) if runner_dir else None,
            "runner_id": (record or {}).get("runner_id"),
            "version": (record or {}).get("version"),
            "local_registration": self.registration.is_configured(runner_dir),
            "remote": remote,
            "service": {"unit": unit.name, "state": self.installer.status(unit)},
            "deploy": {"host": deploy.host, "user": deploy.user, "port": deploy.port, "path": deploy.path}
                      if deploy.configured else None,
            "updated_at": (record or {}).get("updated_at"),
        }

    def unregister(self) -> dict:
        """Best-effort reverse: stop and remove the unit, remove the registration."""
        identity = self.identity
        completed: List[str] = []

        with self.lock:
            record = self.store.load()
            stage = self.store.stage_of(record)
            runner_dir = self._runner_dir(record)
            unit = self.installer.unit_for(identity, runner_dir or self.config.runner_root)

            try:
                if self.installer.uninstall(unit):
                    completed.append("service_removed")
                self.registration.unregister(identity, runner_dir)
                completed.append("registration_removed")
            except RunnerError as e:
                raise LifecycleError(stage, completed, e)

            self.store.save(stage=Stage.IDLE.label, registered=False, runner_id=None, unit=None,
                            identity=identity.to_dict())

        logger.info(f"Runner '{identity.name}' unregistered; runner files and user {self.config.runner_user} kept.")
        return self.store.load() or {}


def print_status(status: dict, as_json: bool = False):
    if as_json:
        print(json.dumps(status, indent=2))
        return

    logger.info(f"Runner:      {status['name']} ({status['repository']})")
    logger.info(f"Labels:      {','.join(status['labels'])}")
    logger.info(f"Stage:       {status['stage']}")
    logger.info(f"Registered:  {'yes' if status['registered'] else 'no'}")
    logger.info(f"Local state: {'present' if status['local_registration'] else 'missing'}")
    remote = status['remote']
    if isinstance(remote, dict):
        logger.info(f"GitHub:      id={remote['id']} status={remote['status']} busy={remote['busy']}")
    else:
        logger.info(f"GitHub:      {'not registered' if remote is None else remote}")
    logger.info(f"Service:     {status['service']['unit']} ({status['service']['state']})")
    if status['deploy']:
        d = status['deploy']
        logger.info(f"Deploy:      {d['user']}@{d['host']}:{d['port']}{d['path']}")


def main(argv: Optional[List[str]] = None):
    """Main entry point"""

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-c', '--config', default='.env', help='Configuration file (default: .env)')

    parser = argparse.ArgumentParser(description="GitHub Actions Runner Lifecycle Manager")
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    register = subparsers.add_parser("register", parents=[common], help="Download, register, install and start the runner")
    register.add_argument('--checksum-retries', type=int, default=0,
                          help='Re-download this many times after a checksum mismatch (default: 0)')
    subparsers.add_parser("start", parents=[common], help="Start the service of a registered runner")
    status = subparsers.add_parser("status", parents=[common], help="Show lifecycle, service and registration state")
    status.add_argument('--json', action='store_true', help='Print status as JSON')
    subparsers.add_parser("unregister", parents=[common], help="Stop the service and remove the registration")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = Config.load(args.config)
        config.validate()

        orchestrator = LifecycleOrchestrator.build(config, checksum_retries=getattr(args, 'checksum_retries', 0))

        if args.command == "register":
            orchestrator.register()
        elif args.command == "start":
            orchestrator.start()
        elif args.command == "status":
            print_status(orchestrator.status(), as_json=args.json)
        elif args.command == "unregister":
            orchestrator.unregister()
    except LifecycleError as e:
        logger.error(str(e))
        logger.error(f"Last completed stage: {e.last_stage.label}"
                     + (f" (done: {', '.join(e.completed)})" if e.completed else ""))
        sys.exit(e.exit_code)
    except RunnerError as e:
        logger.error(str(e))
        sys.exit(EXIT_FATAL)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        sys.exit(EXIT_INTERRUPTED)
    except Exception:
        logger.exception("Unexpected error occurred.")
        sys.exit(EXIT_FATAL)

    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
