import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from valet.core import config
from valet.core.errors import CertificateSigningError
from valet.core.filesystem import Filesystem
from valet.core.stubs import load_stub, render
from valet.core.system_utils import CommandLine

logger = logging.getLogger(__name__)

LEAF_SUFFIXES = ('.key', '.csr', '.crt', '.conf')


@dataclass(frozen=True)
class CertificateRecord:
    hostname: str
    key_path: Path
    csr_path: Path
    crt_path: Path
    conf_path: Path

    @property
    def paths(self) -> List[Path]:
        return [self.key_path, self.csr_path, self.crt_path, self.conf_path]

    @property
    def exists(self) -> bool:
        """A leaf only counts when all four files are on disk."""
        return all(path.is_file() for path in self.paths)


class CertificateAuthority:
    """One local root CA, one leaf certificate per secured site."""

    def __init__(self, cli: CommandLine, files: Filesystem,
                 ca_dir: Path = config.CA_DIR, cert_dir: Path = config.CERT_DIR,
                 trust_dir: Path = config.CA_TRUST_DIR,
                 user_home: Optional[Path] = None,
                 stubs_dir: Path = config.STUBS_DIR,
                 ca_stem: str = config.CA_FILE_STEM,
                 organization: str = config.CA_ORGANIZATION,
                 common_name: str = config.CA_COMMON_NAME,
                 email: str = config.CA_EMAIL):
        self.cli = cli
        self.files = files
        self.ca_dir = Path(ca_dir)
        self.cert_dir = Path(cert_dir)
        self.trust_dir = Path(trust_dir)
        self.user_home = Path(user_home) if user_home else Path.home()
        self.stubs_dir = Path(stubs_dir)
        self.ca_stem = ca_stem
        self.organization = organization
        self.common_name = common_name
        self.email = email

    # --- Paths ---
    @property
    def ca_pem(self) -> Path:
        return self.ca_dir / f"{self.ca_stem}.pem"

    @property
    def ca_key(self) -> Path:
        return self.ca_dir / f"{self.ca_stem}.key"

    @property
    def ca_serial(self) -> Path:
        return self.ca_dir / f"{self.ca_stem}.srl"

    @property
    def trust_anchor(self) -> Path:
        return self.trust_dir / f"{self.ca_stem}.pem.crt"

    def record(self, hostname: str) -> CertificateRecord:
        return CertificateRecord(
            hostname=hostname,
            key_path=self.cert_dir / f"{hostname}.key",
            csr_path=self.cert_dir / f"{hostname}.csr",
            crt_path=self.cert_dir / f"{hostname}.crt",
            conf_path=self.cert_dir / f"{hostname}.conf",
        )

    def is_secured(self, hostname: str) -> bool:
        return self.record(hostname).exists

    def list_secured(self) -> Set[str]:
        secured = set()
        if not self.cert_dir.is_dir():
            return secured
        for crt in self.cert_dir.glob('*.crt'):
            hostname = crt.name[:-len('.crt')]
            if self.record(hostname).exists:
                secured.add(hostname)
            else:
                logger.debug(f"SSL_MANAGER: Ignoring incomplete certificate set for {hostname}")
        return secured

    # --- Root CA ---
    def ensure_root(self, validity_days: int = config.CA_VALIDITY_DAYS) -> bool:
        """Creates the root CA if needed and makes sure it is trusted.

        Returns True when a new root was generated.
        """
        if self.ca_pem.is_file() and self.ca_key.is_file():
            self.trust_root()
            return False

        self.files.ensure_dir_exists(self.ca_dir, as_user=True)
        for stale in (self.ca_pem, self.ca_key, self.ca_serial):
            if self.files.unlink(stale):
                logger.info(f"SSL_MANAGER: Removed stale CA file {stale}")

        subject = (f"/C=/ST=/O={self.organization}/localityName=/commonName={self.common_name}"
                   f"/organizationalUnitName=Developers/emailAddress={self.email}/")
        command = [
            config.OPENSSL_PATH, 'req', '-new', '-newkey', 'rsa:2048', '-days', str(validity_days),
            '-nodes', '-x509', '-subj', subject,
            '-keyout', str(self.ca_key), '-out', str(self.ca_pem),
        ]
        logger.info(f"SSL_MANAGER: Creating root CA {self.ca_pem}")
        self.cli.run_as_user(command, on_error=self._signing_failed(command, "Unable to create the root CA"))
        self.trust_root()
        return True

    def trust_root(self) -> None:
        """Installs the root into the OS bundle and the user's browser databases.

        Failures only mean browser warnings, so they are logged and ignored.
        """
        try:
            self.files.copy(self.ca_pem, self.trust_anchor)
            self.cli.run([config.UPDATE_CA_CERTIFICATES_PATH], on_error=self._trust_warning('update-ca-certificates'))
        except OSError as e:
            logger.warning(f"SSL_MANAGER: Could not install {self.trust_anchor}: {e}")

        for database in self.nss_databases():
            self._certutil(database, ['-A', '-t', 'TC', '-n', self.organization, '-i', str(self.ca_pem)])

    def untrust_root(self) -> None:
        if self.files.unlink(self.trust_anchor):
            self.cli.run([config.UPDATE_CA_CERTIFICATES_PATH], on_error=self._trust_warning('update-ca-certificates'))
        for database in self.nss_databases():
            self._certutil(database, ['-D', '-n', self.organization], quiet=True)

    def remove_root(self) -> None:
        self.untrust_root()
        for path in (self.ca_pem, self.ca_key, self.ca_serial):
            self.files.unlink(path)
        logger.info("SSL_MANAGER: Root CA removed.")

    # --- Leaves ---
    def issue_leaf(self, hostname: str, validity_days: int = config.LEAF_VALIDITY_DAYS,
                   openssl_conf: Optional[str] = None) -> CertificateRecord:
        """Generates key, CSR and a root-signed certificate for `hostname`.

        `openssl_conf` replaces the default v3_req/SAN config when given.
        Any partial output is removed before the error propagates.
        """
        self.ensure_root()
        self.files.ensure_dir_exists(self.cert_dir, as_user=True)
        record = self.record(hostname)
        logger.info(f"SSL_MANAGER: Issuing certificate for {hostname}")

        conf = openssl_conf if openssl_conf is not None else render(
            load_stub('openssl.conf', self.stubs_dir), {'VALET_DOMAIN': hostname})
        self.files.put_as_user(record.conf_path, conf)

        subject = (f"/C=/ST=/O=/localityName=/commonName={hostname}"
                   f"/organizationalUnitName=/emailAddress={self.email}/")
        sign = [
            config.OPENSSL_PATH, 'x509', '-req', '-sha256', '-days', str(validity_days),
            '-CA', str(self.ca_pem), '-CAkey', str(self.ca_key), '-CAserial', str(self.ca_serial),
        ]
        if not self.ca_serial.is_file():
            sign.append('-CAcreateserial')
        sign += ['-in', str(record.csr_path), '-out', str(record.crt_path),
                 '-extensions', 'v3_req', '-extfile', str(record.conf_path)]

        steps = [
            [config.OPENSSL_PATH, 'genrsa', '-out', str(record.key_path), '2048'],
            [config.OPENSSL_PATH, 'req', '-new', '-key', str(record.key_path), '-out', str(record.csr_path),
             '-subj', subject, '-config', str(record.conf_path)],
            sign,
        ]
        try:
            for command in steps:
                self.cli.run_as_user(command, on_error=self._signing_failed(
                    command, f"Unable to sign a certificate for [{hostname}]"))
        except CertificateSigningError:
            self._remove_leaf_files(record)
            raise

        if not record.exists:
            self._remove_leaf_files(record)
            raise CertificateSigningError(f"Certificate files for [{hostname}] are missing after signing")

        try:
            record.key_path.chmod(0o600)
        except OSError as e:
            logger.warning(f"SSL_MANAGER: Could not restrict permissions on {record.key_path}: {e}")

        for database in self.nss_databases():
            self._certutil(database, ['-A', '-t', 'P,,', '-n', hostname, '-i', str(record.crt_path)])
        return record

    def revoke_leaf(self, hostname: str) -> bool:
        """Removes the four leaf files. Returns True if anything was removed."""
        record = self.record(hostname)
        removed = self._remove_leaf_files(record)
        if removed:
            logger.info(f"SSL_MANAGER: Revoked certificate for {hostname}")
            for database in self.nss_databases():
                self._certutil(database, ['-D', '-n', hostname], quiet=True)
        return removed

    def _remove_leaf_files(self, record: CertificateRecord) -> bool:
        removed = False
        for path in record.paths:
            removed = self.files.unlink(path) or removed
        return removed

    # --- Browser trust stores ---
    def nss_databases(self) -> List[Path]:
        """The user's shared NSS database plus every Firefox profile found."""
        databases = []
        nssdb = self.user_home / config.NSS_DB_DIR
        if nssdb.is_dir():
            databases.append(nssdb)
        for pattern in config.FIREFOX_PROFILE_GLOBS:
            databases.extend(sorted(p for p in self.user_home.glob(pattern) if p.is_dir()))
        return databases

    def _certutil(self, database: Path, arguments: List[str], quiet: bool = False) -> None:
        command = [config.CERTUTIL_PATH, '-d', f"sql:{database}", *arguments]
        if quiet:
            self.cli.quietly_as_user(command)
        else:
            self.cli.run_as_user(command, on_error=self._trust_warning(f"certutil ({database})"))

    @staticmethod
    def _trust_warning(what: str):
        def _warn(exit_code: int, output: str) -> None:
            logger.warning(f"SSL_MANAGER: {what} failed (exit code {exit_code}): {output}")
        return _warn

    @staticmethod
    def _signing_failed(command: List[str], message: str):
        def _raise(exit_code: int, output: str) -> None:
            raise CertificateSigningError(message, command=command, exit_code=exit_code, output=output)
        return _raise
