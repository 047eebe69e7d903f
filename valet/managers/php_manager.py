import re
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Set

from valet.core import config
from valet.core.configuration import Configuration, GlobalParameters
from valet.core.errors import (
    InvalidVersionFormatError, PackageInstallFailedError, PoolPathNotFoundError,
    ServiceUnavailableError, UnsupportedVersionError, ValetError,
)
from valet.core.filesystem import Filesystem
from valet.core.stubs import load_stub, render
from valet.core.system_utils import CommandLine, retry

logger = logging.getLogger(__name__)

# php8.2, php@8.2, php-8.2, 8.2, 82, 8.2.10
_VERSION_PATTERN = re.compile(r'^\s*(?:php)?[@-]?(\d)\.?(\d)(?:\.\d+)*\s*$', re.IGNORECASE)


def normalize_php_version(raw: str) -> str:
    """Canonical MAJOR.MINOR form of a PHP version alias."""
    match = _VERSION_PATTERN.match(raw or "")
    if not match:
        raise InvalidVersionFormatError(raw)
    return f"{match.group(1)}.{match.group(2)}"


def socket_file_name(version: str) -> str:
    digits = re.sub(r'\D', '', version)
    return f"{config.FPM_SOCKET_PREFIX}{digits}{config.FPM_SOCKET_SUFFIX}"


def socket_path(version: str, home: Path = config.CONFIG_DIR) -> Path:
    return Path(home) / socket_file_name(version)


class PhpFpmManager:
    """Version identity, FPM pool installation and utilization tracking."""

    def __init__(self, cli: CommandLine, packages, services, files: Filesystem,
                 configuration: Configuration, site_store=None,
                 home: Path = config.CONFIG_DIR,
                 pool_dir_candidates: Sequence[str] = config.FPM_POOL_DIR_CANDIDATES,
                 supported_versions: Sequence[str] = config.SUPPORTED_PHP_VERSIONS,
                 isolation_versions: Sequence[str] = config.ISOLATION_SUPPORTED_PHP_VERSIONS,
                 extensions: Sequence[str] = config.COMMON_PHP_EXTENSIONS,
                 stubs_dir: Path = config.STUBS_DIR,
                 startup_checks: int = config.FPM_STARTUP_CHECKS,
                 startup_check_interval: float = config.FPM_STARTUP_CHECK_INTERVAL):
        self.cli = cli
        self.packages = packages
        self.services = services
        self.files = files
        self.configuration = configuration
        self.site_store = site_store
        self.home = Path(home)
        self.pool_dir_candidates = tuple(pool_dir_candidates)
        self.supported_versions = tuple(supported_versions)
        self.isolation_versions = tuple(isolation_versions)
        self.extensions = tuple(extensions)
        self.stubs_dir = Path(stubs_dir)
        self.startup_checks = startup_checks
        self.startup_check_interval = startup_check_interval

    # --- Identity ---
    def normalize(self, raw: str) -> str:
        return normalize_php_version(raw)

    def validate(self, raw: str, isolation: bool = False) -> str:
        """Normalizes `raw` and checks it against the matching allow-list."""
        version = self.normalize(raw)
        allowed = self.isolation_versions if isolation else self.supported_versions
        if version not in allowed:
            raise UnsupportedVersionError(version, allowed)
        return version

    def socket_file(self, version: str) -> Path:
        return socket_path(version, self.home)

    def fpm_service(self, version: str) -> str:
        return self.packages.php_fpm_name(version)

    def binary_path(self, version: str) -> str:
        return config.PHP_BINARY_TEMPLATE.format(version=version)

    def current_version(self) -> str:
        return self.configuration.global_parameters().php_version

    def pool_config_directory(self, version: str) -> Path:
        substitutions = {'version': version, 'version_nodot': re.sub(r'\D', '', version)}
        for candidate in self.pool_dir_candidates:
            path = Path(candidate.format(**substitutions))
            if path.is_dir():
                logger.debug(f"PHP_MANAGER: Pool directory for PHP {version}: {path}")
                return path
        raise PoolPathNotFoundError(version)

    # --- Utilization ---
    def utilized_versions(self) -> Set[str]:
        """Default version plus every version pinned by an isolated site."""
        versions = {self.current_version()}
        pinned: Iterable[str] = self.site_store.isolated_versions() if self.site_store else []
        for raw in pinned:
            try:
                versions.add(self.normalize(raw))
            except InvalidVersionFormatError:
                logger.warning(f"PHP_MANAGER: Ignoring unparsable isolated version '{raw}'.")
        return versions

    def stop_if_unused(self, version: Optional[str]) -> bool:
        """Stops the FPM service of `version` when no site needs it any more.

        The package stays installed. Returns True if a stop was issued.
        """
        if not version:
            return False
        version = self.normalize(version)
        if version in self.utilized_versions():
            logger.debug(f"PHP_MANAGER: PHP {version} is still in use, leaving FPM running.")
            return False
        service = self.fpm_service(version)
        if not self.packages.installed(service):
            logger.debug(f"PHP_MANAGER: {service} is not installed, nothing to stop.")
            return False
        logger.info(f"PHP_MANAGER: PHP {version} is no longer used, stopping {service}.")
        self.services.stop(service)
        return True

    # --- Installation ---
    def is_installed(self, version: str) -> bool:
        return self.packages.installed(self.fpm_service(version))

    def install(self, version: str) -> None:
        """Installs FPM and the common extensions for `version`, then starts it with the valet pool."""
        service = self.fpm_service(version)
        logger.info(f"PHP_MANAGER: Installing PHP {version} ({service})")
        self.packages.ensure_installed(service)
        self.install_extensions(version)
        if self.services.disabled(service):
            self.services.enable(service)
        self.install_configuration(version)
        self.restart(version)

    def install_extensions(self, version: str) -> None:
        prefix = self.packages.php_extension_prefix(version)
        for extension in self.extensions:
            package = f"{prefix}{extension}"
            try:
                self.packages.ensure_installed(package)
            except PackageInstallFailedError as e:
                # Some distros fold extensions into the main package.
                logger.warning(f"PHP_MANAGER: Skipping extension {package}: {e}")

    def install_configuration(self, version: str) -> Path:
        pool_dir = self.pool_config_directory(version)
        contents = render(load_stub('fpm.conf', self.stubs_dir), {
            'VALET_USER': self.files.user,
            'VALET_GROUP': self.files.group,
            'VALET_FPM_SOCKET_FILE': str(self.socket_file(version)),
        })
        pool_file = pool_dir / config.FPM_CONFIG_FILE_NAME
        self.files.put(pool_file, contents)
        logger.info(f"PHP_MANAGER: Wrote FPM pool {pool_file}")
        return pool_file

    def restart(self, version: str) -> None:
        service = self.fpm_service(version)
        self.services.restart(service)
        retry(self.startup_checks, lambda: self._ensure_running(service),
              sleep=self.startup_check_interval, retry_on=(ServiceUnavailableError,))

    def stop(self, version: str) -> None:
        self.services.stop(self.fpm_service(version))

    def _ensure_running(self, service: str) -> None:
        if not self.services.is_active(service):
            raise ServiceUnavailableError(f"{service} did not start",
                                          output=self.services.status(service))

    # --- Default version ---
    def switch_default(self, raw_version: str, install_if_missing: bool = True, update_cli: bool = False,
                       reconcile: Optional[Callable[[GlobalParameters], None]] = None) -> str:
        """Makes `raw_version` the default PHP version.

        If installation fails the previous default stays in config.json and
        the error is re-raised. Returns the canonical new version.
        """
        version = self.validate(raw_version)
        old_version = self.current_version()
        logger.info(f"PHP_MANAGER: Switching default PHP from {old_version} to {version}")

        try:
            if not install_if_missing and not self.is_installed(version):
                raise PackageInstallFailedError(
                    f"PHP {version} is not installed and installation was not requested")
            self.install(version)
        except ValetError:
            logger.error(f"PHP_MANAGER: Installing PHP {version} failed, keeping PHP {old_version} as default.")
            self.configuration.set('php_version', old_version)
            raise

        self.configuration.set('php_version', version)
        if reconcile is not None:
            reconcile(self.configuration.global_parameters())
        if old_version != version:
            self.stop_if_unused(old_version)
        if update_cli:
            self.update_cli_binary(version)
        return version

    def update_cli_binary(self, version: str) -> None:
        binary = self.binary_path(version)

        def _warn(exit_code: int, output: str) -> None:
            logger.warning(f"PHP_MANAGER: Could not point the php CLI at {binary} (exit code {exit_code}): {output}")

        self.cli.run([config.UPDATE_ALTERNATIVES_PATH, '--set', 'php', binary], on_error=_warn)
