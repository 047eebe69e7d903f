import re
import logging
import shutil
from typing import List, Optional

from valet.core import config
from valet.core.errors import PackageInstallFailedError
from valet.core.system_utils import CommandLine

logger = logging.getLogger(__name__)


class PackageManager:
    """Distro package-manager adapter. Subclasses fill in the commands."""

    name = "generic"
    binary = ""
    fpm_pattern = "php{version}-fpm"
    extension_pattern = "php{version}-"

    def __init__(self, cli: CommandLine, install_timeout: float = config.PACKAGE_INSTALL_TIMEOUT):
        self.cli = cli
        self.install_timeout = install_timeout

    def is_available(self) -> bool:
        return bool(self.binary) and shutil.which(self.binary) is not None

    def installed(self, package: str) -> bool:
        raise NotImplementedError

    def install_command(self, package: str) -> List[str]:
        raise NotImplementedError

    def ensure_installed(self, package: str) -> None:
        if not self.installed(package):
            self.install_or_fail(package)

    def install_or_fail(self, package: str) -> None:
        logger.info(f"PACKAGE_MANAGER: Installing {package} with {self.name}...")
        command = self.install_command(package)

        def _fail(exit_code: int, output: str) -> None:
            raise PackageInstallFailedError(
                f"{self.name.capitalize()} was unable to install [{package}].",
                command=command, exit_code=exit_code, output=output,
            )

        self.cli.run(command, on_error=_fail, timeout=self.install_timeout)
        logger.info(f"PACKAGE_MANAGER: Installed {package}.")

    def php_fpm_name(self, version: str) -> str:
        return self._render(self.fpm_pattern, version)

    def php_extension_prefix(self, version: str) -> str:
        return self._render(self.extension_pattern, version)

    @staticmethod
    def _render(pattern: str, version: str) -> str:
        return pattern.format(version=version, version_nodot=re.sub(r'\D', '', version))


class Apt(PackageManager):
    name = "apt"
    binary = "apt-get"

    def installed(self, package: str) -> bool:
        output = self.cli.run(['dpkg', '-l', package], on_error=lambda code, out: None)
        return any(line.startswith('ii') and f" {package}" in line for line in output.splitlines())

    def install_command(self, package: str) -> List[str]:
        return ['apt-get', 'install', '-y', package]


class Dnf(PackageManager):
    name = "dnf"
    binary = "dnf"

    def installed(self, package: str) -> bool:
        failed = []
        self.cli.run(['rpm', '-q', package], on_error=lambda code, out: failed.append(code))
        return not failed

    def install_command(self, package: str) -> List[str]:
        return ['dnf', 'install', '-y', package]


class Pacman(PackageManager):
    name = "pacman"
    binary = "pacman"
    fpm_pattern = "php{version_nodot}-fpm"
    extension_pattern = "php{version_nodot}-"

    def installed(self, package: str) -> bool:
        output = self.cli.run(['pacman', '-Qqs', package], on_error=lambda code, out: None)
        return package in output.splitlines()

    def install_command(self, package: str) -> List[str]:
        return ['pacman', '--noconfirm', '--needed', '-S', package]


PACKAGE_MANAGERS = (Apt, Dnf, Pacman)


def detect_package_manager(cli: CommandLine) -> Optional[PackageManager]:
    for manager_class in PACKAGE_MANAGERS:
        manager = manager_class(cli)
        if manager.is_available():
            logger.debug(f"PACKAGE_MANAGER: Using {manager.name}")
            return manager
    logger.error("PACKAGE_MANAGER: No supported package manager found (apt, dnf, pacman).")
    return None
