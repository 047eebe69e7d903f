"""Pytest configuration and fixtures.

Every fixture works inside tmp_path; the package manager, systemd and the
external commands (openssl, certutil, update-ca-certificates) are fakes.
"""
import grp
import os
import pwd
from dataclasses import dataclass
from pathlib import Path

import pytest

from valet.cli import Services
from valet.core.configuration import Configuration
from valet.core.errors import PackageInstallFailedError
from valet.core.filesystem import Filesystem
from valet.managers.nginx_manager import NginxManager, SiteConfigStore
from valet.managers.package_manager import PackageManager
from valet.managers.php_manager import PhpFpmManager
from valet.managers.reconciler import Reconciler
from valet.managers.site_manager import SiteManager
from valet.managers.ssl_manager import CertificateAuthority


class FakeCommandLine:
    """Records commands; fakes openssl by creating the files it would write."""

    def __init__(self, user):
        self.user = user
        self.commands = []
        self.failures = {}  # substring of the joined command -> (exit code, output)

    def fail_when(self, fragment, exit_code=1, output="boom"):
        self.failures[fragment] = (exit_code, output)

    def run(self, command, on_error=None, timeout=None):
        command = list(command)
        self.commands.append(command)
        joined = " ".join(command)
        for fragment, (exit_code, output) in self.failures.items():
            if fragment in joined:
                if on_error is not None:
                    on_error(exit_code, output)
                return ""
        if command and command[0] == 'openssl':
            self._fake_openssl(command)
        return ""

    def run_as_user(self, command, on_error=None, timeout=None):
        return self.run(command, on_error=on_error, timeout=timeout)

    def quietly(self, command):
        self.run(command, on_error=lambda code, output: None)

    def quietly_as_user(self, command):
        self.quietly(command)

    def ran(self, *fragments):
        return [c for c in self.commands if all(f in " ".join(c) for f in fragments)]

    @staticmethod
    def _fake_openssl(command):
        for flag in ('-out', '-keyout'):
            if flag in command:
                Path(command[command.index(flag) + 1]).write_text(f"fake {command[1]}\n")
        if '-CAcreateserial' in command:
            Path(command[command.index('-CAserial') + 1]).write_text("01\n")


class FakePackages(PackageManager):
    name = "fake"

    def __init__(self, cli, installed=()):
        super().__init__(cli)
        self.packages = set(installed)
        self.broken = set()
        self.installs = []

    def installed(self, package):
        return package in self.packages

    def install_command(self, package):
        return ['fake-install', package]

    def install_or_fail(self, package):
        self.installs.append(package)
        if package in self.broken:
            raise PackageInstallFailedError(f"Fake was unable to install [{package}].",
                                            command=self.install_command(package),
                                            exit_code=100, output="E: Unable to locate package")
        self.packages.add(package)


class FakeServices:
    def __init__(self):
        self.calls = []
        self.dead = set()

    def _record(self, action, service):
        self.calls.append((action, service))

    def start(self, service):
        self._record('start', service)

    def stop(self, service):
        self._record('stop', service)

    def restart(self, service):
        self._record('restart', service)

    def enable(self, service):
        self._record('enable', service)

    def disable(self, service):
        self._record('disable', service)

    def disabled(self, service):
        return False

    def is_active(self, service):
        return service not in self.dead

    def status(self, service):
        return 'failed' if service in self.dead else 'active'

    def print_status(self, service):
        return self.status(service)

    def count(self, action, service):
        return self.calls.count((action, service))


@dataclass
class ValetEnv:
    root: Path
    cli: FakeCommandLine
    packages: FakePackages
    services: FakeServices
    files: Filesystem
    configuration: Configuration
    certificates: CertificateAuthority
    store: SiteConfigStore
    nginx: NginxManager
    php: PhpFpmManager
    sites: SiteManager
    reconciler: Reconciler

    @property
    def app(self):
        return Services(self.configuration, self.php, self.certificates, self.store,
                        self.nginx, self.sites, self.reconciler)

    def make_site(self, name):
        """A project directory linked as `name`."""
        directory = self.root / 'projects' / name
        directory.mkdir(parents=True, exist_ok=True)
        self.sites.link(directory, name)
        return directory


@pytest.fixture
def pool_root(tmp_path):
    """Debian-style FPM pool directories for a few versions."""
    root = tmp_path / 'etc'
    for version in ('7.4', '8.1', '8.2', '8.3'):
        (root / 'php' / version / 'fpm' / 'pool.d').mkdir(parents=True)
    return root


@pytest.fixture
def valet_env(tmp_path, pool_root):
    user = pwd.getpwuid(os.getuid()).pw_name
    group = grp.getgrgid(os.getgid()).gr_name
    home = tmp_path / 'valet'
    user_home = tmp_path / 'home'
    (user_home / '.pki' / 'nssdb').mkdir(parents=True)

    cli = FakeCommandLine(user)
    files = Filesystem(user=user, group=group)
    packages = FakePackages(cli, installed={'php8.1-fpm', 'php8.2-fpm'})
    services = FakeServices()
    configuration = Configuration(files, config_file=home / 'config.json')
    configuration.update(php_version='8.2')

    certificates = CertificateAuthority(cli, files, ca_dir=home / 'CA', cert_dir=home / 'Certificates',
                                        trust_dir=tmp_path / 'ca-certificates', user_home=user_home)
    store = SiteConfigStore(files, certificates, nginx_dir=home / 'Nginx', home=home,
                            server_path=home / 'server.php')
    nginx = NginxManager(files, services, sites_available=tmp_path / 'nginx' / 'sites-available',
                         sites_enabled=tmp_path / 'nginx' / 'sites-enabled', home=home,
                         server_path=home / 'server.php')
    php = PhpFpmManager(cli, packages, services, files, configuration, site_store=store, home=home,
                        pool_dir_candidates=(str(pool_root / 'php' / '{version}' / 'fpm' / 'pool.d'),),
                        startup_check_interval=0)
    sites = SiteManager(files, configuration, certificates, store, nginx, sites_dir=home / 'Sites')
    reconciler = Reconciler(configuration, php, certificates, store, nginx, sites)
    return ValetEnv(tmp_path, cli, packages, services, files, configuration, certificates, store,
                    nginx, php, sites, reconciler)


@pytest.fixture
def params(valet_env):
    return valet_env.configuration.global_parameters()
