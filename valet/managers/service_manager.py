import logging

from valet.core import config
from valet.core.errors import ServiceUnavailableError
from valet.core.system_utils import CommandLine

logger = logging.getLogger(__name__)


class Systemd:
    """Service-manager adapter over systemctl."""

    def __init__(self, cli: CommandLine, systemctl: str = config.SYSTEMCTL_PATH):
        self.cli = cli
        self.systemctl = systemctl

    def _action(self, action: str, service: str) -> None:
        command = [self.systemctl, action, service]

        def _fail(exit_code: int, output: str) -> None:
            raise ServiceUnavailableError(f"Unable to {action} service [{service}]",
                                          command=command, exit_code=exit_code, output=output)

        logger.info(f"SERVICE_MANAGER: {action.capitalize()} {service}")
        self.cli.run(command, on_error=_fail)

    def start(self, service: str) -> None:
        self._action('start', service)

    def stop(self, service: str) -> None:
        self._action('stop', service)

    def restart(self, service: str) -> None:
        self._action('restart', service)

    def enable(self, service: str) -> None:
        self._action('enable', service)

    def disable(self, service: str) -> None:
        self._action('disable', service)

    def disabled(self, service: str) -> bool:
        output = self.cli.run([self.systemctl, 'is-enabled', service], on_error=lambda code, out: None)
        return output.strip() != 'enabled'

    def is_active(self, service: str) -> bool:
        return self.status(service) == 'active'

    def status(self, service: str) -> str:
        """systemd's one-word state: active, inactive, failed, activating..."""
        output = self.cli.run([self.systemctl, 'is-active', service], on_error=lambda code, out: None)
        return output.strip() or 'unknown'

    def print_status(self, service: str) -> str:
        state = self.status(service)
        if state == 'active':
            logger.info(f"SERVICE_MANAGER: {service} is running")
        else:
            logger.warning(f"SERVICE_MANAGER: {service} is {state}")
        return state
