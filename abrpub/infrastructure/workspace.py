import logging
import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple
from abrpub.domain.errors import WorkspaceLocked

OUTPUT_DIR = "output"
SOURCE_STEM = "source"


class WorkspaceManager:
    """Allocates, finds and removes per-job temp workspaces under one root."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.logger = logging.getLogger(__name__)

    def _prefix(self, asset_id: str) -> str:
        return f"hls_{asset_id}_"

    def allocate(self, asset_id: str) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        while True:
            workspace = self.root / f"{self._prefix(asset_id)}{int(time.time() * 1000)}"
            try:
                workspace.mkdir()
            except FileExistsError:
                time.sleep(0.001)
                continue
            break
        (workspace / OUTPUT_DIR).mkdir()
        self.logger.info(f"Allocated workspace {workspace}")
        return workspace

    def list_for(self, asset_id: str) -> List[Tuple[int, Path]]:
        """Existing workspaces for the asset as (epoch_ms, path), newest first."""
        if not self.root.is_dir():
            return []
        prefix = self._prefix(asset_id)
        found = []
        for path in self.root.iterdir():
            if not path.is_dir() or not path.name.startswith(prefix):
                continue
            stamp = path.name[len(prefix):]
            if stamp.isdigit():
                found.append((int(stamp), path))
        found.sort(reverse=True)
        return found

    def find_latest(self, asset_id: str, require_playlists: bool = False) -> Optional[Path]:
        """Newest workspace for the asset; with require_playlists, the newest holding any .m3u8."""
        for _, path in self.list_for(asset_id):
            if not require_playlists or any(self.output_dir(path).rglob("*.m3u8")):
                return path
        return None

    def output_dir(self, workspace: Path) -> Path:
        return workspace / OUTPUT_DIR

    def source_path(self, workspace: Path, source_key: str) -> Path:
        suffix = Path(source_key).suffix or ".mp4"
        return workspace / f"{SOURCE_STEM}{suffix}"

    def cleanup(self, workspace: Path):
        if workspace.exists():
            shutil.rmtree(workspace)
            self.logger.info(f"Removed workspace {workspace}")

    def cleanup_stale(self, asset_id: str, keep: Optional[Path] = None):
        """Removes every workspace of the asset except keep."""
        for _, path in self.list_for(asset_id):
            if keep is None or path != keep:
                self.cleanup(path)

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @contextmanager
    def lock(self, asset_id: str) -> Iterator[Path]:
        """Advisory per-asset lock so two local invocations cannot share a workspace."""
        self.root.mkdir(parents=True, exist_ok=True)
        lock_path = self.root / f"{asset_id}.lock"
        for _ in range(2):
            try:
                fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    pid = int(lock_path.read_text().strip() or 0)
                except (OSError, ValueError):
                    pid = 0
                if pid and not self._pid_alive(pid):
                    self.logger.warning(f"Removing stale lock {lock_path} (pid {pid} is gone)")
                    lock_path.unlink(missing_ok=True)
                    continue
                raise WorkspaceLocked(asset_id, str(lock_path))
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            break
        else:
            raise WorkspaceLocked(asset_id, str(lock_path))

        try:
            yield lock_path
        finally:
            lock_path.unlink(missing_ok=True)
