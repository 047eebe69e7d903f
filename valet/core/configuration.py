import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from valet.core import config
from valet.core.filesystem import Filesystem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GlobalParameters:
    """Immutable snapshot of the settings every generated artifact depends on."""
    domain: str = config.DEFAULT_DOMAIN
    port: str = config.DEFAULT_HTTP_PORT
    https_port: str = config.DEFAULT_HTTPS_PORT
    php_version: str = config.DEFAULT_PHP_VERSION

    def with_changes(self, **changes) -> "GlobalParameters":
        return replace(self, **changes)

    def hostname(self, name: str) -> str:
        """`name` qualified with the pseudo-TLD, unless it already is."""
        suffix = f".{self.domain}"
        return name if name.endswith(suffix) else f"{name}{suffix}"


def default_settings() -> Dict[str, Any]:
    return {
        'domain': config.DEFAULT_DOMAIN,
        'port': config.DEFAULT_HTTP_PORT,
        'https_port': config.DEFAULT_HTTPS_PORT,
        'php_version': config.DEFAULT_PHP_VERSION,
        'paths': [],
        'isolated_versions': {},
    }


class Configuration:
    """config.json reader/writer.

    Every accessor re-reads the file so that a command always acts on what
    is on disk right now, even if another terminal changed it.
    """

    def __init__(self, files: Filesystem, config_file: Path = config.CONFIG_FILE):
        self.files = files
        self.config_file = Path(config_file)

    def read(self) -> Dict[str, Any]:
        settings = default_settings()
        if not self.config_file.is_file():
            return settings
        try:
            loaded = json.loads(self.files.read(self.config_file))
        except json.JSONDecodeError as e:
            logger.error(f"CONFIGURATION: {self.config_file} is not valid JSON ({e}). Using defaults.")
            return settings
        if not isinstance(loaded, dict):
            logger.error(f"CONFIGURATION: {self.config_file} does not contain a JSON object. Using defaults.")
            return settings
        settings.update(loaded)
        return settings

    def write(self, settings: Dict[str, Any]) -> None:
        self.files.put_as_user(self.config_file, json.dumps(settings, indent=4) + "\n")
        logger.debug(f"CONFIGURATION: Saved {self.config_file}")

    def get(self, key: str, default: Any = None) -> Any:
        return self.read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.update(**{key: value})

    def update(self, **values: Any) -> None:
        settings = self.read()
        settings.update(values)
        self.write(settings)

    def global_parameters(self) -> GlobalParameters:
        settings = self.read()
        return GlobalParameters(
            domain=str(settings['domain']),
            port=str(settings['port']),
            https_port=str(settings['https_port']),
            php_version=str(settings['php_version']),
        )

    def parse_domain(self, name: str) -> str:
        return self.global_parameters().hostname(name)

    # --- Parked paths ---
    def paths(self) -> List[str]:
        return list(self.read().get('paths') or [])

    def add_path(self, path: str, prepend: bool = False) -> None:
        settings = self.read()
        paths = [p for p in settings.get('paths') or [] if p != path]
        if prepend:
            paths.insert(0, path)
        else:
            paths.append(path)
        settings['paths'] = paths
        self.write(settings)

    def remove_path(self, path: str) -> None:
        settings = self.read()
        settings['paths'] = [p for p in settings.get('paths') or [] if p != path]
        self.write(settings)

    def prune(self) -> List[str]:
        """Drops parked paths that no longer exist. Returns the removed ones."""
        settings = self.read()
        kept, removed = [], []
        for path in settings.get('paths') or []:
            (kept if Path(path).is_dir() else removed).append(path)
        if removed:
            settings['paths'] = kept
            self.write(settings)
            logger.info(f"CONFIGURATION: Pruned missing paths: {', '.join(removed)}")
        return removed

    # --- Isolated PHP binaries ---
    def isolated_binary(self, directory: str) -> Optional[str]:
        return (self.read().get('isolated_versions') or {}).get(directory)

    def add_isolated_binary(self, directory: str, binary: str) -> None:
        settings = self.read()
        isolated = dict(settings.get('isolated_versions') or {})
        isolated[directory] = binary
        settings['isolated_versions'] = isolated
        self.write(settings)

    def remove_isolated_binary(self, directory: str) -> None:
        settings = self.read()
        isolated = dict(settings.get('isolated_versions') or {})
        if isolated.pop(directory, None) is not None:
            settings['isolated_versions'] = isolated
            self.write(settings)
