import os
import stat
from pathlib import Path
from typing import Optional

from .errors import CleanupFailed
from .logger_setup import logger


class CleanupHandler:
    def __init__(self):
        self.logger = logger

    def cleanup(self, credential_path: Optional[Path]):
        """Deletes the ephemeral credential file. A missing file is not an error."""
        if credential_path is None:
            self.logger.debug("No credential was materialized; nothing to clean up.")
            return
        path = Path(credential_path)
        if path.exists() or path.is_symlink():
            try:
                if os.name == "nt":
                    # Windows refuses to delete read-only files.
                    os.chmod(path, stat.S_IWRITE | stat.S_IREAD)
                path.unlink()
            except OSError as e:
                raise CleanupFailed(f"Could not delete credential file {path}: {e.strerror or e}")
            self.logger.info(f"Deleted credential file {path}")
        else:
            self.logger.debug(f"Credential file {path} already gone.")

        try:
            path.parent.rmdir()
        except OSError:
            pass # directory not empty or already removed
