"""
Subprocess execution for external tools (config.sh, useradd, systemctl, gh).
"""

import os
import select
import subprocess
import sys
import time
from collections import deque
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from runner_config import RunnerError, logger

TERMINATED_ERROR = 1


class CommandRunner:
    """
    Runs commands with streamed output, an optional timeout and a bounded
    buffer of the last lines for error reporting.
    """
    IO_POLL_INTERVAL = 1.0
    ERROR_LOG_SIZE = 50
    TERMINATION_TIMEOUT = 5.0
    SENSITIVE_FLAGS = {'--token', '--pat'}

    def __init__(self, cwd: Optional[Path] = None):
        self.cwd = cwd

    def sanitize_args(self, args: List[str]) -> str:
        """
        Masks values of sensitive arguments for logging purposes.
        Example: ['--token', 'SECRET'] -> '--token ***'
        """
        if not args:
            return ""

        sanitized = []
        i = 0
        while i < len(args):
            arg = str(args[i])
            sanitized.append(arg)

            if arg in self.SENSITIVE_FLAGS and i + 1 < len(args):
                sanitized.append("***")
                i += 2
                continue

            i += 1

        return " ".join(sanitized)

    def as_user(self, user: Optional[str], args: List[str]) -> List[str]:
        """Prefixes runuser when root needs to act as another account."""
        if not user or os.geteuid() != 0:
            return list(args)
        return ["runuser", "-u", user, "--"] + list(args)

    def _terminate_process(self, process: Optional[subprocess.Popen]) -> None:
        """Terminate subprocess gracefully, escalating to force kill if needed."""
        if process is None or process.poll() is not None:
            return

        try:
            process.terminate()
            process.wait(timeout=self.TERMINATION_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            try:
                process.wait(timeout=self.TERMINATION_TIMEOUT)
            except subprocess.TimeoutExpired:
                pass

    def run(self, args: List[str], timeout: Optional[float] = None, check: bool = True,
            cwd: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> int:
        """
        Execute a command, echoing its merged output.

        Args:
            args: Command arguments as list.
            timeout: Max execution time in seconds (None for infinite).
            check: if true, a non-zero exit code or a timeout raises RunnerError
                   carrying the last captured output lines.
        """
        start_time = time.time()
        binary_name = args[0]
        logger.debug(f"Executing: {self.sanitize_args(args)}")

        captured_lines = deque(maxlen=self.ERROR_LOG_SIZE)
        process = None

        try:
            with subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                cwd=cwd or self.cwd,
                env=dict(env) if env is not None else None,
                bufsize=1
            ) as proc:
                process = proc

                while True:
                    run_time = time.time() - start_time
                    if timeout:
                        if run_time > timeout:
                            raise subprocess.TimeoutExpired(cmd=args, timeout=timeout)
                        wait_time = timeout - run_time
                    else:
                        wait_time = self.IO_POLL_INTERVAL

                    rlist = [process.stdout.fileno()]
                    rready, _, _ = select.select(rlist, [], [], wait_time)

                    if not rready:
                        if process.poll() is not None:
                            break
                        continue

                    line = process.stdout.readline()
                    if not line:
                        break

                    sys.stdout.write(line)
                    sys.stdout.flush()

                    captured_lines.append(line)

            return_code = process.poll()

            if return_code != 0 and check:
                error_context = "".join(captured_lines).strip()
                raise RunnerError(f"Command failed (Code {return_code}).\nLast output:\n{error_context}")

            return return_code

        except subprocess.TimeoutExpired:
            self._terminate_process(process)

            error_context = "".join(captured_lines).strip()
            stderr_info = f"\nLast output:\n{error_context}" if error_context else ""

            safe_comm = self.sanitize_args(args)
            message = f"Command timed out after {timeout}s: {safe_comm}{stderr_info}"
            if check:
                raise RunnerError(message)

            logger.error(message)
            return TERMINATED_ERROR
        except FileNotFoundError:
            raise RunnerError(f"Binary not found: {binary_name}")
        except Exception as e:
            self._terminate_process(process)

            if isinstance(e, RunnerError):
                raise e
            raise RunnerError(f"Unexpected error executing {binary_name}: {e}")

    def capture(self, args: List[str], timeout: Optional[float] = 30,
                cwd: Optional[Path] = None) -> Tuple[int, str]:
        """Runs a short command and returns (exit code, stdout) without echoing."""
        logger.debug(f"Executing: {self.sanitize_args(args)}")
        try:
            result = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd or self.cwd,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise RunnerError(f"Binary not found: {args[0]}")
        except subprocess.TimeoutExpired:
            raise RunnerError(f"Command timed out after {timeout}s: {self.sanitize_args(args)}")
        return result.returncode, result.stdout
