import os
import shutil
import stat
from pathlib import Path
from .logger_setup import logger

WORKSPACES_DIR_NAME = "workspaces"


def _clear_readonly_and_retry(func, path, exc_info):
    # Hardened key files carry the read-only attribute, which blocks deletion on Windows.
    os.chmod(path, stat.S_IWRITE | stat.S_IREAD)
    func(path)


class WorkspaceManager:
    """One private directory per build under <data_dir>/workspaces/<build_id>."""

    def __init__(self, data_dir: Path):
        self.workspaces_dir = Path(data_dir) / WORKSPACES_DIR_NAME
        self.workspaces_dir.mkdir(parents=True, exist_ok=True)

    def workspace_path(self, build_id: str) -> Path:
        return self.workspaces_dir / build_id

    def create_workspace(self, build_id: str) -> Path:
        ws_path = self.workspace_path(build_id)
        if ws_path.exists():
            logger.warning(f"Workspace {ws_path} left over from an earlier run of build {build_id}; removing it.")
            self.cleanup_workspace(ws_path)
        # Owner-only: the credential is materialized inside this tree.
        ws_path.mkdir(parents=True, mode=0o700)
        logger.info(f"Created workspace for build {build_id}: {ws_path}")
        return ws_path

    def cleanup_workspace(self, workspace_path: Path):
        if not workspace_path.is_dir():
            logger.debug(f"Workspace {workspace_path} already removed.")
            return
        try:
            shutil.rmtree(workspace_path, onerror=_clear_readonly_and_retry)
            logger.info(f"Removed workspace {workspace_path}")
        except OSError as e:
            logger.error(f"Error removing workspace {workspace_path}: {e}")
