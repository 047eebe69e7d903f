import re
import logging
from pathlib import Path
from typing import Mapping

from valet.core import config

logger = logging.getLogger(__name__)


def load_stub(name: str, stubs_dir: Path = config.STUBS_DIR) -> str:
    stub_path = Path(stubs_dir) / name
    logger.debug(f"STUBS: Loading {stub_path}")
    return stub_path.read_text(encoding='utf-8')


def render(template: str, values: Mapping[str, str]) -> str:
    """Replaces every VALET_* placeholder in one pass.

    Longer keys are tried first and substituted values are never scanned
    again, so a proxy URL or path containing a placeholder name is safe.
    """
    if not values:
        return template
    keys = sorted(values, key=len, reverse=True)
    pattern = re.compile('|'.join(re.escape(key) for key in keys))
    return pattern.sub(lambda match: str(values[match.group(0)]), template)
