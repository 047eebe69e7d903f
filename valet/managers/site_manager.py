import re
import logging
from pathlib import Path
from typing import Dict, List, Optional

from valet.core import config
from valet.core.configuration import Configuration
from valet.core.errors import InvalidProxyUrlError, MalformedSiteConfigError, SiteNotFoundError
from valet.core.filesystem import Filesystem
from valet.managers.nginx_manager import PlainMode, ProxyMode, SiteRecord

logger = logging.getLogger(__name__)

# Characters that would end or break the unquoted proxy_pass directive are rejected.
_PROXY_URL = re.compile(r"^https?://[^\s;{}\"']+$")


class SiteManager:
    """Linked and parked sites, plus the per-site secure/proxy commands."""

    def __init__(self, files: Filesystem, configuration: Configuration, certificates, store, nginx,
                 sites_dir: Path = config.SITES_DIR):
        self.files = files
        self.configuration = configuration
        self.certificates = certificates
        self.store = store
        self.nginx = nginx
        self.sites_dir = Path(sites_dir)

    # --- Site discovery ---
    def links(self) -> Dict[str, Path]:
        """Linked site name -> target directory."""
        linked = {}
        for name in self.files.scandir(self.sites_dir):
            entry = self.sites_dir / name
            if entry.is_symlink():
                linked[name] = entry.resolve()
        return linked

    def parked(self) -> Dict[str, Path]:
        """Site name -> directory for every sub-directory of a parked path."""
        found = {}
        for parked_path in self.configuration.paths():
            for name in self.files.scandir(parked_path):
                directory = Path(parked_path) / name
                if directory.is_dir():
                    found.setdefault(name, directory)
        return found

    def sites(self) -> Dict[str, Path]:
        sites = self.parked()
        sites.update(self.links())
        return sites

    def site_name(self, name: str) -> str:
        """`name` without the pseudo-TLD suffix."""
        suffix = f".{self.configuration.global_parameters().domain}"
        return name[:-len(suffix)] if name.endswith(suffix) else name

    def name_for_directory(self, directory: Path) -> Optional[str]:
        directory = Path(directory).resolve()
        for name, target in self.sites().items():
            if Path(target).resolve() == directory:
                return name
        return None

    def resolve(self, name: Optional[str] = None, cwd: Optional[Path] = None) -> str:
        """Site name for `name`, or for the current directory when omitted.

        Raises SiteNotFoundError before anything is changed.
        """
        if name:
            site = self.site_name(name)
            if site not in self.sites():
                raise SiteNotFoundError(site)
            return site
        directory = Path(cwd or Path.cwd())
        site = self.name_for_directory(directory)
        if site is None:
            raise SiteNotFoundError(directory.name)
        return site

    def directory(self, site: str) -> Path:
        sites = self.sites()
        if site not in sites:
            raise SiteNotFoundError(site)
        return sites[site]

    def hostname(self, name: str) -> str:
        return self.configuration.parse_domain(self.site_name(name))

    # --- Links ---
    def link(self, target: Path, name: str) -> Path:
        link_path = self.sites_dir / name
        self.files.ensure_dir_exists(self.sites_dir, as_user=True)
        self.files.symlink_as_user(Path(target).resolve(), link_path)
        logger.info(f"SITE_MANAGER: Linked {name} -> {target}")
        return link_path

    def unlink(self, name: str) -> bool:
        site = self.site_name(name)
        hostname = self.hostname(site)
        if self.certificates.is_secured(hostname):
            self.unsecure(hostname, preserve=False)
        removed = self.files.unlink(self.sites_dir / site)
        if removed:
            logger.info(f"SITE_MANAGER: Unlinked {site}")
        return removed

    def prune_links(self) -> List[str]:
        return self.files.remove_broken_links(self.sites_dir)

    # --- TLS ---
    def secure(self, name: str) -> SiteRecord:
        """Issues a fresh certificate and rewrites the site as secured, keeping its mode."""
        hostname = self.hostname(name)
        params = self.configuration.global_parameters()
        existing = self._existing(hostname)
        mode = existing.mode if existing else PlainMode()

        self.certificates.revoke_leaf(hostname)
        self.certificates.issue_leaf(hostname)
        record = self.store.write(hostname, mode, True, params)
        self.nginx.restart()
        return record

    def unsecure(self, name: str, preserve: bool = True) -> Optional[SiteRecord]:
        """Drops the certificate. Proxy and isolated sites keep their mode when `preserve` is set."""
        hostname = self.hostname(name)
        params = self.configuration.global_parameters()
        existing = self._existing(hostname)

        self.certificates.revoke_leaf(hostname)
        record = None
        if preserve and existing is not None and not isinstance(existing.mode, PlainMode):
            record = self.store.write(hostname, existing.mode, False, params)
        else:
            self.store.remove(hostname)
        self.nginx.restart()
        return record

    def secured(self) -> List[str]:
        return sorted(self.certificates.list_secured())

    # --- Proxies ---
    def proxy(self, name: str, url: str, secure: bool = False) -> SiteRecord:
        if not _PROXY_URL.match(url or ""):
            raise InvalidProxyUrlError(url)
        hostname = self.hostname(name)
        params = self.configuration.global_parameters()
        if secure:
            self.certificates.issue_leaf(hostname)
        record = self.store.write(hostname, ProxyMode(url), secure or self.certificates.is_secured(hostname), params)
        self.nginx.restart()
        logger.info(f"SITE_MANAGER: {hostname} now proxies to {url}")
        return record

    def unproxy(self, name: str) -> bool:
        hostname = self.hostname(name)
        self.certificates.revoke_leaf(hostname)
        removed = self.store.remove(hostname)
        self.nginx.restart()
        return removed

    def proxies(self) -> List[SiteRecord]:
        return self.store.proxies()

    def _existing(self, hostname: str) -> Optional[SiteRecord]:
        try:
            return self.store.derive(hostname)
        except MalformedSiteConfigError as e:
            logger.warning(f"SITE_MANAGER: {e}. Treating {hostname} as a plain site.")
            return None
