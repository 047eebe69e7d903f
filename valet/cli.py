import sys
import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from valet.core import config
from valet.core.configuration import Configuration
from valet.core.errors import UnsupportedVersionError, ValetError
from valet.core.filesystem import Filesystem
from valet.core.system_utils import CommandLine, user_home
from valet.managers.nginx_manager import NginxManager, SiteConfigStore
from valet.managers.package_manager import detect_package_manager
from valet.managers.php_manager import PhpFpmManager
from valet.managers.reconciler import Reconciler
from valet.managers.service_manager import Systemd
from valet.managers.site_manager import SiteManager
from valet.managers.ssl_manager import CertificateAuthority

logger = logging.getLogger(__name__)


@dataclass
class Services:
    configuration: Configuration
    php: PhpFpmManager
    certificates: CertificateAuthority
    store: SiteConfigStore
    nginx: NginxManager
    sites: SiteManager
    reconciler: Reconciler


def build_services() -> Services:
    """Wires the real adapters together."""
    config.ensure_base_dirs()
    cli = CommandLine()
    files = Filesystem(user=cli.user)
    packages = detect_package_manager(cli)
    if packages is None:
        raise ValetError("No supported package manager found (apt, dnf or pacman).")
    services = Systemd(cli)
    configuration = Configuration(files)

    certificates = CertificateAuthority(cli, files, user_home=Path(user_home(cli.user)))
    store = SiteConfigStore(files, certificates)
    nginx = NginxManager(files, services)
    php = PhpFpmManager(cli, packages, services, files, configuration, site_store=store)
    sites = SiteManager(files, configuration, certificates, store, nginx)
    reconciler = Reconciler(configuration, php, certificates, store, nginx, sites)
    return Services(configuration, php, certificates, store, nginx, sites, reconciler)


# --- Command handlers ---
def cmd_use(app: Services, args) -> int:
    version = app.reconciler.on_default_version_change(
        args.version, update_cli=args.update_cli, install_if_missing=not args.no_install)
    print(f"Valet is now using PHP {version}.")
    return 0


def cmd_isolate(app: Services, args) -> int:
    record = app.reconciler.on_isolate(args.site, args.version, secure=args.secure)
    print(f"The site [{record.hostname}] is now using PHP {record.mode.php_version}.")
    return 0


def cmd_unisolate(app: Services, args) -> int:
    site = app.sites.resolve(args.site)
    hostname = app.configuration.parse_domain(site)
    if hostname not in {record.hostname for record in app.store.isolated_sites()}:
        print(f"The site [{hostname}] is not isolated.")
        return 0
    app.reconciler.on_unisolate(site)
    print(f"The site [{hostname}] is now using the default PHP version.")
    return 0


def cmd_isolated(app: Services, args) -> int:
    rows = app.reconciler.isolated()
    if not rows:
        print("No isolated sites.")
        return 0
    print(f"{'URL':<40} {'SECURED':<8} VERSION")
    for row in rows:
        print(f"{row['url']:<40} {row['secured']:<8} {row['version']}")
    return 0


def cmd_which_php(app: Services, args) -> int:
    print(app.reconciler.which_php(args.site))
    return 0


def cmd_domain(app: Services, args) -> int:
    current = app.configuration.global_parameters().domain
    if not args.domain:
        print(current)
        return 0
    report = app.reconciler.on_domain_change(current, args.domain)
    print(f"Your Valet domain has been updated to [{args.domain.strip('.')}].")
    return _report_skipped(report)


def cmd_port(app: Services, args) -> int:
    params = app.configuration.global_parameters()
    if not args.port:
        print(params.https_port if args.https else params.port)
        return 0
    report = app.reconciler.on_port_change(args.port, https=args.https)
    print(f"Your Nginx {'HTTPS ' if args.https else ''}port has been updated to [{args.port}].")
    return _report_skipped(report)


def cmd_regenerate(app: Services, args) -> int:
    report = app.reconciler.regenerate()
    print(f"Regenerated {len(report.written)} site configuration(s).")
    return _report_skipped(report)


def cmd_secure(app: Services, args) -> int:
    name = args.domain or app.sites.resolve(None)
    record = app.sites.secure(name)
    print(f"The [{record.hostname}] site has been secured with a fresh TLS certificate.")
    return 0


def cmd_unsecure(app: Services, args) -> int:
    names = app.sites.secured() if args.all else [args.domain or app.sites.resolve(None)]
    for name in names:
        app.sites.unsecure(name)
        print(f"The [{app.sites.hostname(name)}] site will now serve traffic over HTTP.")
    return 0


def cmd_secured(app: Services, args) -> int:
    secured = app.sites.secured()
    if args.site:
        hostname = app.sites.hostname(args.site)
        print(f"{hostname} is {'' if hostname in secured else 'not '}secured.")
        return 0 if hostname in secured else 1
    for hostname in secured:
        print(hostname)
    return 0


def cmd_proxy(app: Services, args) -> int:
    record = app.sites.proxy(args.domain, args.url, secure=args.secure)
    scheme = 'https' if record.secured else 'http'
    print(f"Valet will now proxy [{scheme}://{record.hostname}] traffic to [{args.url}].")
    return 0


def cmd_unproxy(app: Services, args) -> int:
    app.sites.unproxy(args.domain)
    print(f"Valet will no longer proxy [{app.sites.hostname(args.domain)}].")
    return 0


def cmd_proxies(app: Services, args) -> int:
    for record in app.sites.proxies():
        print(f"{record.hostname:<40} {'X' if record.secured else '':<8} {record.mode.upstream_url}")
    return 0


def cmd_link(app: Services, args) -> int:
    target = Path(args.path or Path.cwd()).resolve()
    name = args.name or target.name
    app.sites.link(target, name)
    print(f"A [{name}] symbolic link has been created in [{app.sites.sites_dir}].")
    if args.secure:
        app.sites.secure(name)
    return 0


def cmd_unlink(app: Services, args) -> int:
    name = args.name or Path.cwd().name
    if not app.sites.unlink(name):
        raise ValetError(f"There is no [{name}] link.")
    print(f"The [{name}] symbolic link has been removed.")
    return 0


def cmd_links(app: Services, args) -> int:
    secured = set(app.sites.secured())
    for name, target in sorted(app.sites.links().items()):
        hostname = app.sites.hostname(name)
        print(f"{hostname:<40} {'X' if hostname in secured else '':<8} {target}")
    return 0


def cmd_park(app: Services, args) -> int:
    path = str(Path(args.path or Path.cwd()).resolve())
    app.configuration.add_path(path, prepend=True)
    print("This directory has been added to Valet's paths.")
    return 0


def cmd_forget(app: Services, args) -> int:
    path = str(Path(args.path or Path.cwd()).resolve())
    app.configuration.remove_path(path)
    print("This directory has been removed from Valet's paths.")
    return 0


def cmd_paths(app: Services, args) -> int:
    app.configuration.prune()
    for path in app.configuration.paths():
        print(path)
    return 0


def cmd_trust(app: Services, args) -> int:
    if args.remove:
        app.certificates.remove_root()
        print("The Valet root certificate has been removed.")
    else:
        app.certificates.ensure_root()
        print("The Valet root certificate is installed and trusted.")
    return 0


def _report_skipped(report) -> int:
    """Lists sites a regeneration left untouched. Any skipped site means exit code 1."""
    for hostname, reason in sorted(report.skipped.items()):
        print(f"Skipped {hostname}: {reason}", file=sys.stderr)
    return 1 if report.skipped else 0


# --- Parser ---
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="valet", description="Local PHP development environment for Linux.")
    parser.add_argument('-v', '--verbose', action='store_true', help='Show debug output.')
    commands = parser.add_subparsers(dest='command', metavar='<command>')
    commands.required = True

    use = commands.add_parser('use', help='Change the default PHP version.')
    use.add_argument('version')
    use.add_argument('--update-cli', action='store_true', help='Also point the php CLI at this version.')
    use.add_argument('--no-install', action='store_true', help='Fail instead of installing a missing version.')
    use.set_defaults(handler=cmd_use)

    isolate = commands.add_parser('isolate', help='Pin a site to a PHP version.')
    isolate.add_argument('version', nargs='?', help=f'Defaults to the contents of {config.PHP_RC_FILE}.')
    isolate.add_argument('--site', help='Site name (defaults to the current directory).')
    isolate.add_argument('--secure', action='store_true')
    isolate.set_defaults(handler=cmd_isolate)

    unisolate = commands.add_parser('unisolate', help='Return a site to the default PHP version.')
    unisolate.add_argument('--site')
    unisolate.set_defaults(handler=cmd_unisolate)

    isolated = commands.add_parser('isolated', help='List isolated sites.')
    isolated.set_defaults(handler=cmd_isolated)

    which_php = commands.add_parser('which-php', help='Print the PHP binary a site uses.')
    which_php.add_argument('site', nargs='?')
    which_php.set_defaults(handler=cmd_which_php)

    domain = commands.add_parser('domain', help='Show or change the pseudo-TLD.')
    domain.add_argument('domain', nargs='?')
    domain.set_defaults(handler=cmd_domain)

    port = commands.add_parser('port', help='Show or change the Nginx port.')
    port.add_argument('port', nargs='?')
    port.add_argument('--https', action='store_true')
    port.set_defaults(handler=cmd_port)

    regenerate = commands.add_parser('regenerate', help='Rewrite every site configuration.')
    regenerate.set_defaults(handler=cmd_regenerate)

    secure = commands.add_parser('secure', help='Serve a site over TLS.')
    secure.add_argument('domain', nargs='?')
    secure.set_defaults(handler=cmd_secure)

    unsecure = commands.add_parser('unsecure', help='Stop serving a site over TLS.')
    unsecure.add_argument('domain', nargs='?')
    unsecure.add_argument('--all', action='store_true')
    unsecure.set_defaults(handler=cmd_unsecure)

    secured = commands.add_parser('secured', help='List secured sites, or check one.')
    secured.add_argument('site', nargs='?')
    secured.set_defaults(handler=cmd_secured)

    proxy = commands.add_parser('proxy', help='Proxy a hostname to another URL.')
    proxy.add_argument('domain')
    proxy.add_argument('url')
    proxy.add_argument('--secure', action='store_true')
    proxy.set_defaults(handler=cmd_proxy)

    unproxy = commands.add_parser('unproxy', help='Remove a proxy.')
    unproxy.add_argument('domain')
    unproxy.set_defaults(handler=cmd_unproxy)

    proxies = commands.add_parser('proxies', help='List proxies.')
    proxies.set_defaults(handler=cmd_proxies)

    link = commands.add_parser('link', help='Serve a directory as a site.')
    link.add_argument('name', nargs='?')
    link.add_argument('--path')
    link.add_argument('--secure', action='store_true')
    link.set_defaults(handler=cmd_link)

    unlink = commands.add_parser('unlink', help='Remove a linked site.')
    unlink.add_argument('name', nargs='?')
    unlink.set_defaults(handler=cmd_unlink)

    links = commands.add_parser('links', help='List linked sites.')
    links.set_defaults(handler=cmd_links)

    park = commands.add_parser('park', help='Serve every sub-directory of a path.')
    park.add_argument('path', nargs='?')
    park.set_defaults(handler=cmd_park)

    forget = commands.add_parser('forget', help='Stop serving a parked path.')
    forget.add_argument('path', nargs='?')
    forget.set_defaults(handler=cmd_forget)

    paths = commands.add_parser('paths', help='List parked paths.')
    paths.set_defaults(handler=cmd_paths)

    trust = commands.add_parser('trust', help='Install (or remove) the local root CA.')
    trust.add_argument('--remove', action='store_true')
    trust.set_defaults(handler=cmd_trust)
    return parser


def main(argv: Optional[List[str]] = None, services: Optional[Services] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        app = services or build_services()
        return args.handler(app, args)
    except ValetError as e:
        logger.debug("CLI: Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        if isinstance(e, UnsupportedVersionError) and args.command == 'use':
            if e.version in config.ISOLATION_SUPPORTED_PHP_VERSIONS:
                print(f"PHP {e.version} can still be used per site: valet isolate {e.version}", file=sys.stderr)
        return 1
