import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

APP_NAME = "valet"

# --- Base Directories ---
_XDG_CONFIG_HOME = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))
CONFIG_DIR = Path(os.environ.get('VALET_HOME', _XDG_CONFIG_HOME / APP_NAME))
SITES_DIR = CONFIG_DIR / 'Sites'            # symlinks created by `valet link`
NGINX_SITES_DIR = CONFIG_DIR / 'Nginx'      # generated per-site server blocks
CERT_DIR = CONFIG_DIR / 'Certificates'      # leaf key/csr/crt/conf
CA_DIR = CONFIG_DIR / 'CA'                  # root CA pem/key/srl
LOG_DIR = CONFIG_DIR / 'Log'
CONFIG_FILE = CONFIG_DIR / 'config.json'
SERVER_PATH = CONFIG_DIR / 'server.php'     # front controller, dropped in by the installer

# --- Package Data ---
PACKAGE_ROOT = Path(__file__).resolve().parent.parent
STUBS_DIR = PACKAGE_ROOT / 'stubs'

# --- Global Defaults ---
DEFAULT_DOMAIN = "test"
DEFAULT_HTTP_PORT = "80"
DEFAULT_HTTPS_PORT = "443"
DEFAULT_PHP_VERSION = "8.3"
STATIC_PREFIX = "41c270e4-5535-4daa-b23e-c269744c2f45"

# --- PHP ---
SUPPORTED_PHP_VERSIONS = ("8.2", "8.3")
ISOLATION_SUPPORTED_PHP_VERSIONS = (
    "7.0", "7.1", "7.2", "7.3", "7.4",
    "8.0", "8.1", "8.2", "8.3",
)
COMMON_PHP_EXTENSIONS = (
    "cli", "mysql", "gd", "zip", "xml", "curl",
    "mbstring", "pgsql", "intl", "posix",
)
PHP_RC_FILE = ".valetphprc"
PHP_BINARY_TEMPLATE = "/usr/bin/php{version}"
FPM_CONFIG_FILE_NAME = "valet.conf"
FPM_SOCKET_PREFIX = "valet"
FPM_SOCKET_SUFFIX = ".sock"

# Probed in order; the first existing directory wins.
# {version} is "8.2", {version_nodot} is "82".
FPM_POOL_DIR_CANDIDATES = (
    "/etc/php/{version}/fpm/pool.d",         # Debian/Ubuntu
    "/etc/php{version}/fpm/pool.d",          # Ubuntu 16.04 style
    "/etc/php{version}/php-fpm.d",
    "/etc/php{version_nodot}/php-fpm.d",     # openSUSE PHP 7/8
    "/etc/php7/fpm/php-fpm.d",
    "/etc/php8/fpm/php-fpm.d",
    "/etc/php-fpm.d",                        # Fedora
    "/etc/php/php-fpm.d",                    # Arch
)

# --- Nginx ---
NGINX_SERVICE = "nginx"
NGINX_SITES_AVAILABLE = Path("/etc/nginx/sites-available")
NGINX_SITES_ENABLED = Path("/etc/nginx/sites-enabled")
NGINX_CATCH_ALL_NAME = "valet.conf"

# --- Certificate Authority ---
CA_FILE_STEM = "ValetLinuxCASelfSigned"
CA_ORGANIZATION = "Valet Linux CA Self Signed Organization"
CA_COMMON_NAME = "Valet Linux CA Self Signed CN"
CA_EMAIL = "certificate@valet.linux"
CA_VALIDITY_DAYS = 20 * 365
LEAF_VALIDITY_DAYS = 368
CA_TRUST_DIR = Path("/usr/local/share/ca-certificates")
NSS_DB_DIR = Path(".pki") / "nssdb"  # relative to the user's home
FIREFOX_PROFILE_GLOBS = (
    ".mozilla/firefox/*.default*",
    "snap/firefox/common/.mozilla/firefox/*.default*",
)

# --- System Commands ---
SYSTEMCTL_PATH = "systemctl"
OPENSSL_PATH = "openssl"
CERTUTIL_PATH = "certutil"
UPDATE_CA_CERTIFICATES_PATH = "update-ca-certificates"
UPDATE_ALTERNATIVES_PATH = "update-alternatives"

# --- Timeouts (seconds) ---
COMMAND_TIMEOUT = 120
PACKAGE_INSTALL_TIMEOUT = 15 * 60
FPM_STARTUP_CHECKS = 5
FPM_STARTUP_CHECK_INTERVAL = 0.5


def ensure_dir(path: Path) -> bool:
    """Creates a directory if it doesn't exist. Returns True on success."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"CONFIG: Ensured directory exists: {path}")
        return True
    except OSError as e:
        logger.error(f"CONFIG: Error creating directory {path}: {e}", exc_info=True)
        return False


def ensure_base_dirs() -> bool:
    """Creates the VALET_HOME tree. Returns False if any directory failed."""
    base_dirs = [CONFIG_DIR, SITES_DIR, NGINX_SITES_DIR, CERT_DIR, CA_DIR, LOG_DIR]
    return all([ensure_dir(d) for d in base_dirs])
