# pdfforge/workspace.py
import logging
import shutil
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Union

logger = logging.getLogger(__name__)


class WorkspaceHandle:
    """One job's private directory. Every path a job writes goes through here."""

    def __init__(self, root: Path):
        self.root = root
        self.files: List[Path] = []
        self.released = False

    def path(self, name: str) -> Path:
        p = (self.root / name).resolve()
        if self.root.resolve() not in p.parents:
            raise ValueError(f"Path escapes workspace: {name}")
        p.parent.mkdir(parents=True, exist_ok=True)
        self.files.append(p)
        return p

    def write(self, name: str, data: Union[bytes, bytearray]) -> Path:
        p = self.path(name)
        p.write_bytes(bytes(data))
        return p

    def subdir(self, name: str) -> Path:
        d = self.path(name)
        d.mkdir(parents=True, exist_ok=True)
        return d


class TempWorkspace:
    def __init__(self, root: Path):
        self.root = Path(root)

    def acquire(self) -> WorkspaceHandle:
        self.root.mkdir(parents=True, exist_ok=True)
        while True:
            token = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"
            d = self.root / token
            try:
                d.mkdir()
            except FileExistsError:
                continue
            logger.debug("Acquired workspace %s", d)
            return WorkspaceHandle(d)

    def release(self, handle: WorkspaceHandle) -> None:
        """Delete the workspace. Failures are logged, never raised."""
        if handle.released:
            logger.debug("Workspace %s already released", handle.root)
            return
        handle.released = True
        try:
            shutil.rmtree(handle.root)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to clean workspace %s: %s", handle.root, e)

    @contextmanager
    def scoped(self) -> Iterator[WorkspaceHandle]:
        handle = self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)
