from __future__ import annotations
from pathlib import Path
import shutil


class WorkspaceStorage:
    """
    Session workspaces on the local filesystem:
      temp/<session_id>/
        └─ <filename>      (source submitted by the client)
    The path is derived from the session id alone.
    """

    def __init__(self, temp_dir: Path):
        # keep it absolute, the path is mounted into containers
        self.temp_dir = temp_dir if temp_dir.is_absolute() else temp_dir.resolve()
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def workspace(self, session_id: str) -> Path:
        return self.temp_dir / session_id

    def write_source(self, session_id: str, filename: str, code: str) -> Path:
        ws = self.workspace(session_id)
        ws.mkdir(parents=True, exist_ok=True)
        (ws / filename).write_text(code, encoding="utf-8")
        return ws

    def remove_workspace(self, session_id: str) -> bool:
        """Returns False when there was nothing to remove."""
        ws = self.workspace(session_id)
        if not ws.exists():
            return False
        shutil.rmtree(ws)
        return True
