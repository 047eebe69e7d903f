"""Exception hierarchy shared by the managers and the CLI.

Validation errors are raised before anything on disk changes. Errors that
wrap an external command carry its exit code and captured output so the
CLI can report them without a traceback.
"""
from typing import Optional, Sequence


class ValetError(Exception):
    """Base class for every error the CLI reports to the user."""


class InvalidVersionFormatError(ValetError):
    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Invalid PHP version [{raw}]. Expected something like 8.2, php8.2 or 82.")


class UnsupportedVersionError(ValetError):
    def __init__(self, version: str, supported: Sequence[str]):
        self.version = version
        self.supported = tuple(supported)
        super().__init__(
            f"Invalid version [{version}] used. Supported versions are: {', '.join(self.supported)}"
        )


class PoolPathNotFoundError(ValetError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Unable to determine PHP-FPM configuration folder for PHP {version}.")


class CommandFailedError(ValetError):
    """An external command exited non-zero."""

    def __init__(self, message: str, command: Optional[Sequence[str]] = None,
                 exit_code: Optional[int] = None, output: str = ""):
        self.command = list(command) if command else []
        self.exit_code = exit_code
        self.output = output
        details = message
        if exit_code is not None:
            details += f" (exit code {exit_code})"
        if output:
            details += f": {output.strip()}"
        super().__init__(details)


class PackageInstallFailedError(CommandFailedError):
    pass


class ServiceUnavailableError(CommandFailedError):
    pass


class CertificateSigningError(CommandFailedError):
    pass


class SiteNotFoundError(ValetError):
    def __init__(self, site: str):
        self.site = site
        super().__init__(f"The [{site}] site could not be found in Valet's site list.")


class MalformedSiteConfigError(ValetError):
    def __init__(self, hostname: str, reason: str):
        self.hostname = hostname
        self.reason = reason
        super().__init__(f"Site config for [{hostname}] is malformed: {reason}")


class InvalidProxyUrlError(ValetError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f'"{url}" is not a valid URL')
