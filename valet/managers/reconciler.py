"""Sequences the PHP, certificate and site-config managers whenever a
global setting (domain, ports, default PHP version) or a site's pinned PHP
version changes.

Every entry point re-reads config.json and the site files before acting,
and everything it writes can be rebuilt by `regenerate()`, so an
interrupted run is repaired by running the same command again.
"""
import logging
from pathlib import Path
from typing import Dict, List, Optional

from valet.core import config
from valet.core.configuration import Configuration, GlobalParameters
from valet.core.errors import MalformedSiteConfigError, ValetError
from valet.managers.nginx_manager import IsolatedMode, PlainMode, RegenerateReport, SiteRecord

logger = logging.getLogger(__name__)


class Reconciler:

    def __init__(self, configuration: Configuration, php, certificates, store, nginx, sites):
        self.configuration = configuration
        self.php = php
        self.certificates = certificates
        self.store = store
        self.nginx = nginx
        self.sites = sites

    # --- Global parameters ---
    def regenerate(self, params: Optional[GlobalParameters] = None) -> RegenerateReport:
        params = params or self.configuration.global_parameters()
        report = self.store.regenerate_all(params)
        self.nginx.install_server(params)
        self.nginx.restart()
        return report

    def on_domain_change(self, old_domain: str, new_domain: str) -> RegenerateReport:
        old_domain = old_domain.strip('.')
        new_domain = new_domain.strip('.')
        if not new_domain:
            raise ValetError("The domain can not be empty.")

        # config.json keeps the old domain until every site has moved, so a
        # failed run is finished by running the same change again.
        params = self.configuration.global_parameters().with_changes(domain=new_domain)
        if old_domain == new_domain:
            self.configuration.set('domain', new_domain)
            return self.regenerate(params)

        logger.info(f"RECONCILER: Moving sites from .{old_domain} to .{new_domain}")
        old_suffix = f".{old_domain}"
        secured = self.certificates.list_secured()
        for hostname in sorted(set(self.store.hostnames()) | secured):
            if not hostname.endswith(old_suffix):
                continue
            new_hostname = hostname[:-len(old_suffix)] + f".{new_domain}"
            try:
                record = self.store.derive(hostname)
            except MalformedSiteConfigError as e:
                logger.warning(f"RECONCILER: Leaving {hostname} alone: {e.reason}")
                continue
            mode = record.mode if record is not None else PlainMode()
            is_secured = hostname in secured
            if is_secured:
                self._reissue(hostname, new_hostname)
            self.store.remove(hostname)
            self.store.write(new_hostname, mode, is_secured, params)

        self.configuration.set('domain', new_domain)
        return self.regenerate(params)

    def on_port_change(self, port, https: bool = False) -> RegenerateReport:
        port = _validate_port(port)
        key = 'https_port' if https else 'port'
        self.configuration.set(key, port)
        logger.info(f"RECONCILER: {'HTTPS' if https else 'HTTP'} port set to {port}")
        return self.regenerate()

    def on_default_version_change(self, version: str, update_cli: bool = False,
                                  install_if_missing: bool = True) -> str:
        return self.php.switch_default(version, install_if_missing=install_if_missing,
                                       update_cli=update_cli, reconcile=self.regenerate)

    # --- Isolation ---
    def on_isolate(self, name: Optional[str], version: Optional[str] = None, secure: bool = False,
                   cwd: Optional[Path] = None) -> SiteRecord:
        site = self.sites.resolve(name, cwd)
        directory = self.sites.directory(site)
        if not version:
            version = self._version_from_rc_file(directory)
        version = self.php.validate(version, isolation=True)

        params = self.configuration.global_parameters()
        hostname = params.hostname(site)
        previous = self._existing(hostname)
        old_version = previous.mode.php_version if previous and isinstance(previous.mode, IsolatedMode) else None

        if self.php.is_installed(version):
            self.php.install_configuration(version)
        else:
            self.php.install(version)

        is_secured = secure or self.certificates.is_secured(hostname)
        if is_secured and not self.certificates.is_secured(hostname):
            self.certificates.issue_leaf(hostname)

        record = self.store.write(hostname, IsolatedMode(version), is_secured, params)
        self.php.restart(version)
        self.nginx.restart()
        if old_version and old_version != version:
            self.php.stop_if_unused(old_version)

        self.configuration.add_isolated_binary(str(directory), self.php.binary_path(version))
        logger.info(f"RECONCILER: {hostname} is now using PHP {version}")
        return record

    def on_unisolate(self, name: Optional[str], cwd: Optional[Path] = None) -> Optional[SiteRecord]:
        site = self.sites.resolve(name, cwd)
        directory = self.sites.directory(site)
        params = self.configuration.global_parameters()
        hostname = params.hostname(site)

        previous = self._existing(hostname)
        if previous is None or not isinstance(previous.mode, IsolatedMode):
            logger.info(f"RECONCILER: {hostname} is not isolated.")
            return None

        record = None
        if self.certificates.is_secured(hostname):
            record = self.store.write(hostname, PlainMode(), True, params)
        else:
            self.store.remove(hostname)

        self.php.stop_if_unused(previous.mode.php_version)
        self.nginx.restart()
        self.configuration.remove_isolated_binary(str(directory))
        logger.info(f"RECONCILER: {hostname} is back on the default PHP version.")
        return record

    def isolated(self) -> List[Dict[str, str]]:
        return [
            {'url': record.hostname, 'secured': 'X' if record.secured else '', 'version': record.mode.php_version}
            for record in self.store.isolated_sites()
        ]

    def which_php(self, name: Optional[str] = None, cwd: Optional[Path] = None) -> str:
        site = self.sites.resolve(name, cwd)
        directory = self.sites.directory(site)
        binary = self.configuration.isolated_binary(str(directory))
        return binary or self.php.binary_path(self.php.current_version())

    # --- Helpers ---
    def _reissue(self, old_hostname: str, new_hostname: str) -> None:
        old_record = self.certificates.record(old_hostname)
        openssl_conf = None
        if old_record.conf_path.is_file():
            openssl_conf = old_record.conf_path.read_text(encoding='utf-8').replace(old_hostname, new_hostname)
        # The new certificate must exist before the old one goes.
        self.certificates.issue_leaf(new_hostname, openssl_conf=openssl_conf)
        self.certificates.revoke_leaf(old_hostname)

    def _existing(self, hostname: str) -> Optional[SiteRecord]:
        try:
            return self.store.derive(hostname)
        except MalformedSiteConfigError as e:
            logger.warning(f"RECONCILER: {e}")
            return None

    @staticmethod
    def _version_from_rc_file(directory: Path) -> str:
        rc_file = Path(directory) / config.PHP_RC_FILE
        if not rc_file.is_file():
            raise ValetError(f"No PHP version given and no {config.PHP_RC_FILE} found in {directory}.")
        version = rc_file.read_text(encoding='utf-8').strip()
        logger.info(f"RECONCILER: Found '{version}' in {rc_file}")
        return version


def _validate_port(port) -> str:
    try:
        number = int(str(port))
    except ValueError:
        raise ValetError(f"Invalid port [{port}].") from None
    if not 0 < number < 65536:
        raise ValetError(f"Invalid port [{port}]. Ports range from 1 to 65535.")
    return str(number)
