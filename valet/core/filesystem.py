import os
import grp
import pwd
import shutil
import logging
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from valet.core.system_utils import current_user, current_group

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class Filesystem:
    """Filesystem adapter.

    The `*_as_user` variants hand ownership of what they create to the
    developer account, since most commands run through sudo.
    """

    def __init__(self, user: Optional[str] = None, group: Optional[str] = None):
        self.user = user or current_user()
        self.group = group or current_group(self.user)

    # --- Queries ---
    def exists(self, path: PathLike) -> bool:
        return Path(path).exists()

    def is_dir(self, path: PathLike) -> bool:
        return Path(path).is_dir()

    def is_link(self, path: PathLike) -> bool:
        return Path(path).is_symlink()

    def read(self, path: PathLike) -> str:
        return Path(path).read_text(encoding='utf-8')

    def scandir(self, path: PathLike) -> List[str]:
        """Sorted entry names in `path`, dotfiles excluded. Missing dir -> []."""
        directory = Path(path)
        if not directory.is_dir():
            return []
        return sorted(entry.name for entry in directory.iterdir() if not entry.name.startswith('.'))

    # --- Writes ---
    def ensure_dir_exists(self, path: PathLike, as_user: bool = False) -> None:
        directory = Path(path)
        if not directory.is_dir():
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"FILESYSTEM: Created directory {directory}")
            if as_user:
                self.chown(directory)

    def put(self, path: PathLike, content: str) -> None:
        """Atomically replaces `path` with `content`."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile('w', dir=target.parent, delete=False, encoding='utf-8',
                                             prefix=f"{target.name}.tmp.") as temp_f:
                temp_path = Path(temp_f.name)
                temp_f.write(content)
                temp_f.flush()
                os.fsync(temp_f.fileno())
            if target.exists():
                shutil.copystat(target, temp_path)
            else:
                temp_path.chmod(0o644)
            os.replace(temp_path, target)
            temp_path = None
            logger.debug(f"FILESYSTEM: Wrote {target}")
        finally:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()

    def put_as_user(self, path: PathLike, content: str) -> None:
        self.put(path, content)
        self.chown(path)

    def copy(self, source: PathLike, destination: PathLike) -> None:
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)

    def copy_as_user(self, source: PathLike, destination: PathLike) -> None:
        self.copy(source, destination)
        self.chown(destination)

    def symlink(self, target: PathLike, link: PathLike) -> None:
        """Points `link` at `target`, replacing whatever `link` was."""
        link_path = Path(link)
        if link_path.is_symlink() or link_path.exists():
            link_path.unlink()
        link_path.parent.mkdir(parents=True, exist_ok=True)
        link_path.symlink_to(target)

    def symlink_as_user(self, target: PathLike, link: PathLike) -> None:
        self.symlink(target, link)
        self.chown(link, follow_symlinks=False)

    def unlink(self, path: PathLike) -> bool:
        """Removes a file or symlink. Returns False if nothing was there."""
        file_path = Path(path)
        if file_path.is_symlink() or file_path.exists():
            file_path.unlink()
            logger.debug(f"FILESYSTEM: Removed {file_path}")
            return True
        return False

    def remove_broken_links(self, path: PathLike) -> List[str]:
        removed = []
        for name in self.scandir(path):
            entry = Path(path) / name
            if entry.is_symlink() and not entry.exists():
                entry.unlink()
                removed.append(name)
        if removed:
            logger.info(f"FILESYSTEM: Removed broken links in {path}: {', '.join(removed)}")
        return removed

    def chown(self, path: PathLike, follow_symlinks: bool = True) -> None:
        try:
            if follow_symlinks:
                shutil.chown(path, user=self.user, group=self.group)
            else:
                os.lchown(path, _uid(self.user), _gid(self.group))
        except (PermissionError, LookupError) as e:
            logger.warning(f"FILESYSTEM: Could not assign {path} to {self.user}:{self.group}: {e}")


def _uid(user: str) -> int:
    return pwd.getpwnam(user).pw_uid


def _gid(group: str) -> int:
    return grp.getgrnam(group).gr_gid
