"""Backup snapshots and scoped cleanup of ephemeral run resources."""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType

from openwrt_tailscale.errors import RollbackError
from openwrt_tailscale.logging import get_logger

log = get_logger("openwrt_tailscale.backup")


@dataclass
class BackupSnapshot:
    """Copies of the installed files taken before an upgrade overwrites them.

    ``saved_files`` maps a logical name (``tailscale``, ``tailscaled``,
    ``tailscale.init``) to the copy inside ``directory``; ``targets`` maps
    the same names to the installed paths they are restored over.
    """

    directory: Path
    targets: dict[str, Path]
    saved_files: dict[str, Path] = field(default_factory=dict)

    @classmethod
    def capture(cls, directory: Path, targets: dict[str, Path]) -> BackupSnapshot:
        """Copy every existing target into ``directory``."""
        directory.mkdir(parents=True, exist_ok=True)
        snapshot = cls(directory=directory, targets=dict(targets))
        for name, target in targets.items():
            if not target.is_file():
                continue
            saved = directory / name
            shutil.copy2(target, saved)
            snapshot.saved_files[name] = saved
        log.info("backup_created", directory=str(directory), files=sorted(snapshot.saved_files))
        return snapshot

    def restore(self) -> list[str]:
        """Copy saved files back over their targets and return the names restored.

        Best effort: a missing copy is skipped, and a failing copy does not
        stop the remaining ones from being restored.

        Raises:
            RollbackError: after all files were attempted, if any failed.
        """
        restored: list[str] = []
        failed: list[str] = []
        for name, target in self.targets.items():
            saved = self.saved_files.get(name)
            if saved is None or not saved.is_file():
                log.debug("restore_skipped", name=name)
                continue
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(saved, target)
                restored.append(name)
            except OSError as exc:
                failed.append(name)
                log.warning("restore_failed", name=name, target=str(target), error=str(exc))
        log.info("backup_restored", files=restored)
        if failed:
            raise RollbackError(f"Could not restore: {', '.join(failed)}")
        return restored


class CleanupGuard:
    """Owns the temporary paths of one run and removes them on exit.

    Paths are registered as they are created and released when the ``with``
    block ends, whatever the exit path. Paths already released (committed
    away) are simply forgotten.
    """

    def __init__(self) -> None:
        self._paths: list[Path] = []

    def __enter__(self) -> CleanupGuard:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release_all()

    def register(self, path: Path) -> Path:
        if path not in self._paths:
            self._paths.append(path)
        return path

    def release(self, path: Path) -> None:
        """Remove a registered path now."""
        _remove(path)
        if path in self._paths:
            self._paths.remove(path)

    def release_all(self) -> None:
        while self._paths:
            _remove(self._paths.pop())


def _remove(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path, ignore_errors=True)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as exc:
        log.warning("cleanup_failed", path=str(path), error=str(exc))


def snapshot_dir(tmp_dir: Path) -> Path:
    """Create a fresh snapshot directory under ``tmp_dir``."""
    tmp_dir.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix="tailscale_backup_", dir=tmp_dir))
