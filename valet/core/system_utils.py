import os
import pwd
import grp
import time
import shlex
import getpass
import logging
import subprocess
from typing import Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from valet.core import config

logger = logging.getLogger(__name__)

T = TypeVar("T")
ErrorCallback = Callable[[int, str], None]


def run_command(command_list: Sequence[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Runs a system command and captures output/return code.

    Returns (returncode, stdout, stderr). A missing binary is reported as -1,
    a timeout as -3, anything else unexpected as -2.
    """
    joined_command = shlex.join(command_list)
    logger.debug(f"SYSTEM_UTILS: Running command: {joined_command}")
    try:
        result = subprocess.run(
            list(command_list),
            capture_output=True,
            text=True,
            check=False,
            encoding='utf-8',
            errors='replace',
            timeout=timeout,
        )
        if result.returncode != 0:
            logger.warning(
                f"SYSTEM_UTILS: Command failed (Code: {result.returncode}): {joined_command}\n"
                f"  Stdout: {result.stdout.strip()}\n"
                f"  Stderr: {result.stderr.strip()}"
            )
        return result.returncode, result.stdout.strip(), result.stderr.strip()
    except FileNotFoundError:
        msg = f"Command not found: {command_list[0]}"
        logger.error(f"SYSTEM_UTILS: {msg}")
        return -1, "", msg
    except subprocess.TimeoutExpired:
        msg = f"Command timed out after {timeout}s: {joined_command}"
        logger.error(f"SYSTEM_UTILS: {msg}")
        return -3, "", msg
    except OSError as e:
        msg = f"Error running command '{joined_command}': {e}"
        logger.error(f"SYSTEM_UTILS: {msg}", exc_info=True)
        return -2, "", msg


def current_user() -> str:
    """The developer account, even when invoked through sudo."""
    return os.environ.get('SUDO_USER') or os.environ.get('USER') or getpass.getuser()


def current_group(user: Optional[str] = None) -> str:
    user = user or current_user()
    try:
        return grp.getgrgid(pwd.getpwnam(user).pw_gid).gr_name
    except KeyError:
        logger.debug(f"SYSTEM_UTILS: No primary group found for '{user}', using the user name.")
        return user


class CommandLine:
    """Process-execution adapter used by every manager."""

    def __init__(self, user: Optional[str] = None, timeout: Optional[float] = config.COMMAND_TIMEOUT):
        self.user = user or current_user()
        self.timeout = timeout

    def run(self, command: Sequence[str], on_error: Optional[ErrorCallback] = None,
            timeout: Optional[float] = None) -> str:
        """Runs `command` and returns stdout.

        On a non-zero exit `on_error(exit_code, output)` is called, where
        output is stderr (or stdout if stderr is empty). The callback may raise.
        """
        code, stdout, stderr = run_command(command, timeout=timeout or self.timeout)
        if code != 0 and on_error is not None:
            on_error(code, stderr or stdout)
        return stdout

    def run_as_user(self, command: Sequence[str], on_error: Optional[ErrorCallback] = None,
                    timeout: Optional[float] = None) -> str:
        return self.run(self._as_user(command), on_error=on_error, timeout=timeout)

    def quietly(self, command: Sequence[str]) -> None:
        self.run(command, on_error=lambda code, output: None)

    def quietly_as_user(self, command: Sequence[str]) -> None:
        self.run_as_user(command, on_error=lambda code, output: None)

    def _as_user(self, command: Sequence[str]) -> List[str]:
        if os.geteuid() == 0 and self.user and self.user != 'root':
            return ['sudo', '-u', self.user, *command]
        return list(command)


def retry(times: int, fn: Callable[[], T], sleep: float = 0,
          retry_on: Tuple[Type[BaseException], ...] = (Exception,)) -> T:
    """Calls `fn` up to `times` times, returning its first successful result.

    The last error is re-raised once the attempts are used up.
    """
    attempts = max(1, times)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                raise
            logger.debug(f"SYSTEM_UTILS: Attempt {attempt}/{attempts} failed: {e}")
            if sleep:
                time.sleep(sleep)
    raise AssertionError("unreachable")


def user_home(user: Optional[str] = None) -> str:
    """Home directory of the developer account (not root's under sudo)."""
    user = user or current_user()
    try:
        return pwd.getpwnam(user).pw_dir
    except KeyError:
        return os.path.expanduser('~')
