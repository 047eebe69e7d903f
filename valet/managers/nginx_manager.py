import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from valet.core import config
from valet.core.configuration import GlobalParameters
from valet.core.errors import MalformedSiteConfigError
from valet.core.filesystem import Filesystem
from valet.core.stubs import load_stub, render
from valet.managers.php_manager import socket_path

logger = logging.getLogger(__name__)


# --- Site modes ---
@dataclass(frozen=True)
class PlainMode:
    stub = "plain"


@dataclass(frozen=True)
class ProxyMode:
    upstream_url: str
    stub = "proxy"


@dataclass(frozen=True)
class IsolatedMode:
    php_version: str
    stub = "isolated"


SiteMode = Union[PlainMode, ProxyMode, IsolatedMode]


@dataclass(frozen=True)
class SiteRecord:
    hostname: str
    mode: SiteMode
    secured: bool
    config_path: Path


def stub_name(mode: SiteMode, secured: bool) -> str:
    return f"{'secure.' if secured else ''}{mode.stub}.valet.conf"


# --- Marker serialization ---
_STUB_MARKER = re.compile(
    r'^# valet stub: (?P<secure>secure\.)?(?:(?P<stub>plain|proxy|isolated)\.)?valet\.conf\s*$')
_VERSION_MARKER = re.compile(r'^# ISOLATED_PHP_VERSION=(?P<version>\S+)\s*$', re.MULTILINE)
_PROXY_PASS = re.compile(r'^\s*proxy_pass\s+(?P<host>[^;\s]+)\s*;', re.MULTILINE)


def encode_markers(mode: SiteMode, secured: bool) -> str:
    """The header lines that let `decode_site_config` recover mode and TLS state."""
    lines = [f"# valet stub: {stub_name(mode, secured)}"]
    if isinstance(mode, IsolatedMode):
        lines.append(f"# ISOLATED_PHP_VERSION={mode.php_version}")
    return "\n".join(lines) + "\n"


def decode_site_config(hostname: str, text: str) -> Tuple[SiteMode, bool]:
    """Reads mode and secured flag back out of a generated site file.

    `# valet stub: secure.valet.conf` (no stub type) is read as secured plain.
    """
    first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
    match = _STUB_MARKER.match(first_line)
    if not match:
        raise MalformedSiteConfigError(hostname, "missing '# valet stub:' marker")
    secured = bool(match.group('secure'))
    stub = match.group('stub') or 'plain'

    if stub == 'proxy':
        proxy = _PROXY_PASS.search(text)
        if not proxy:
            raise MalformedSiteConfigError(hostname, "proxy stub without a proxy_pass directive")
        return ProxyMode(proxy.group('host')), secured
    if stub == 'isolated':
        version = _VERSION_MARKER.search(text)
        if not version:
            raise MalformedSiteConfigError(hostname, "isolated stub without ISOLATED_PHP_VERSION marker")
        return IsolatedMode(version.group('version')), secured
    return PlainMode(), secured


@dataclass
class RegenerateReport:
    written: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)


class SiteConfigStore:
    """Generated per-site Nginx files under VALET_HOME/Nginx."""

    def __init__(self, files: Filesystem, certificates,
                 nginx_dir: Path = config.NGINX_SITES_DIR,
                 home: Path = config.CONFIG_DIR,
                 server_path: Path = config.SERVER_PATH,
                 stubs_dir: Path = config.STUBS_DIR,
                 static_prefix: str = config.STATIC_PREFIX):
        self.files = files
        self.certificates = certificates
        self.nginx_dir = Path(nginx_dir)
        self.home = Path(home)
        self.server_path = Path(server_path)
        self.stubs_dir = Path(stubs_dir)
        self.static_prefix = static_prefix

    def config_path(self, hostname: str) -> Path:
        return self.nginx_dir / hostname

    def hostnames(self) -> List[str]:
        return self.files.scandir(self.nginx_dir)

    def exists(self, hostname: str) -> bool:
        return self.config_path(hostname).is_file()

    # --- Read ---
    def derive(self, hostname: str) -> Optional[SiteRecord]:
        """Rebuilds the SiteRecord from the file on disk, None if there is no file.

        Raises MalformedSiteConfigError when the markers can't be read.
        """
        path = self.config_path(hostname)
        if not path.is_file():
            return None
        mode, secured = decode_site_config(hostname, self.files.read(path))
        return SiteRecord(hostname=hostname, mode=mode, secured=secured, config_path=path)

    def records(self) -> List[SiteRecord]:
        """Every readable site record; malformed files are logged and left out."""
        found = []
        for hostname in self.hostnames():
            try:
                record = self.derive(hostname)
            except MalformedSiteConfigError as e:
                logger.warning(f"NGINX_MANAGER: {e}")
                continue
            if record is not None:
                found.append(record)
        return found

    def isolated_sites(self) -> List[SiteRecord]:
        return [r for r in self.records() if isinstance(r.mode, IsolatedMode)]

    def isolated_versions(self) -> List[str]:
        return [r.mode.php_version for r in self.isolated_sites()]

    def proxies(self) -> List[SiteRecord]:
        return [r for r in self.records() if isinstance(r.mode, ProxyMode)]

    # --- Write ---
    def render(self, hostname: str, mode: SiteMode, secured: bool, params: GlobalParameters) -> str:
        if isinstance(mode, IsolatedMode):
            fpm_socket = socket_path(mode.php_version, self.home)
        else:
            fpm_socket = socket_path(params.php_version, self.home)
        certificate = self.certificates.record(hostname)
        values = {
            'VALET_HOME_PATH': str(self.home),
            'VALET_SERVER_PATH': str(self.server_path),
            'VALET_STATIC_PREFIX': self.static_prefix,
            'VALET_SITE': hostname,
            'VALET_CERT': str(certificate.crt_path),
            'VALET_KEY': str(certificate.key_path),
            'VALET_HTTP_PORT': str(params.port),
            'VALET_HTTPS_PORT': str(params.https_port),
            'VALET_REDIRECT_PORT': '' if str(params.https_port) == '443' else f":{params.https_port}",
            'VALET_FPM_SOCKET_FILE': str(fpm_socket),
            'VALET_PROXY_HOST': mode.upstream_url if isinstance(mode, ProxyMode) else '',
            'VALET_ISOLATED_PHP_VERSION': mode.php_version if isinstance(mode, IsolatedMode) else '',
        }
        body = render(load_stub(stub_name(mode, secured), self.stubs_dir), values)
        return encode_markers(mode, secured) + "\n" + body

    def write(self, hostname: str, mode: SiteMode, secured: bool, params: GlobalParameters) -> SiteRecord:
        """Replaces the whole site file for `hostname`."""
        path = self.config_path(hostname)
        self.files.ensure_dir_exists(self.nginx_dir, as_user=True)
        self.files.put_as_user(path, self.render(hostname, mode, secured, params))
        logger.info(f"NGINX_MANAGER: Wrote {stub_name(mode, secured)} config for {hostname}")
        return SiteRecord(hostname=hostname, mode=mode, secured=secured, config_path=path)

    def remove(self, hostname: str) -> bool:
        removed = self.files.unlink(self.config_path(hostname))
        if removed:
            logger.info(f"NGINX_MANAGER: Removed site config for {hostname}")
        return removed

    def regenerate_all(self, params: GlobalParameters) -> RegenerateReport:
        """Rewrites every site file against `params`.

        Mode comes from each file's markers; TLS state comes from the
        certificate directory, so a secured site without a file becomes
        secured plain. Malformed files are skipped and reported.
        """
        report = RegenerateReport()
        secured_hosts = self.certificates.list_secured()
        for hostname in sorted(set(self.hostnames()) | secured_hosts):
            try:
                record = self.derive(hostname)
            except MalformedSiteConfigError as e:
                logger.warning(f"NGINX_MANAGER: Skipping {hostname}: {e.reason}")
                report.skipped[hostname] = e.reason
                continue
            mode = record.mode if record is not None else PlainMode()
            self.write(hostname, mode, hostname in secured_hosts, params)
            report.written.append(hostname)
        logger.info(f"NGINX_MANAGER: Regenerated {len(report.written)} site(s), skipped {len(report.skipped)}.")
        return report


class NginxManager:
    """The catch-all server block and the nginx service itself."""

    def __init__(self, files: Filesystem, services,
                 sites_available: Path = config.NGINX_SITES_AVAILABLE,
                 sites_enabled: Path = config.NGINX_SITES_ENABLED,
                 home: Path = config.CONFIG_DIR,
                 server_path: Path = config.SERVER_PATH,
                 stubs_dir: Path = config.STUBS_DIR,
                 service_name: str = config.NGINX_SERVICE,
                 static_prefix: str = config.STATIC_PREFIX):
        self.files = files
        self.services = services
        self.sites_available = Path(sites_available)
        self.sites_enabled = Path(sites_enabled)
        self.home = Path(home)
        self.server_path = Path(server_path)
        self.stubs_dir = Path(stubs_dir)
        self.service_name = service_name
        self.static_prefix = static_prefix

    @property
    def server_config_path(self) -> Path:
        return self.sites_available / config.NGINX_CATCH_ALL_NAME

    def install_server(self, params: GlobalParameters) -> Path:
        contents = render(load_stub('valet.conf', self.stubs_dir), {
            'VALET_HOME_PATH': str(self.home),
            'VALET_SERVER_PATH': str(self.server_path),
            'VALET_STATIC_PREFIX': self.static_prefix,
            'VALET_HTTP_PORT': str(params.port),
            'VALET_FPM_SOCKET_FILE': str(socket_path(params.php_version, self.home)),
        })
        self.files.put(self.server_config_path, contents)
        self.files.symlink(self.server_config_path, self.sites_enabled / config.NGINX_CATCH_ALL_NAME)
        logger.info(f"NGINX_MANAGER: Installed catch-all server on port {params.port}")
        return self.server_config_path

    def restart(self) -> None:
        self.services.restart(self.service_name)

    def stop(self) -> None:
        self.services.stop(self.service_name)

    def status(self) -> str:
        return self.services.print_status(self.service_name)
