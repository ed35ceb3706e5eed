"""JSON file state backend."""

import os
import shutil
import tempfile
from pathlib import Path

from driftplan.errors import StateError
from driftplan.state.store import StateStore


class LocalStateStore(StateStore):
    """Stores state in a local JSON file, keeping the previous version as ``.backup``."""

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".backup")

    def _read(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text()
        except OSError as exc:
            raise StateError(f"{self.path}: {exc}") from exc

    def _write(self, payload: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                shutil.copy2(self.path, self.backup_path)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w") as handle:
                    handle.write(payload)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StateError(f"{self.path}: {exc}") from exc
