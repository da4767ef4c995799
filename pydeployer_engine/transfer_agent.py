import os
import posixpath
import socket
import stat
import time
from pathlib import Path
from typing import List, Optional, Tuple

import paramiko

from .errors import BuildAborted, TransferFailed
from .logger_setup import logger
from .models import DeploymentTarget, TransferResult

# Never pushed to the target.
EXCLUDED_DIR_NAMES = {".git", ".credentials"}


class TransferAgent:
    """Pushes a workspace tree to a DeploymentTarget over SSH/SFTP.

    A plain transfer writes straight into `target.remote_path`, overwriting
    whatever is there. If it fails halfway the target is left with a mix of
    old and new files. With `target.atomic` the tree is uploaded next to the
    live path and renamed over it once complete.
    """

    def __init__(self, connect_timeout: float = 30.0, retries: int = 0, backoff_seconds: float = 2.0,
                 client_factory=paramiko.SSHClient, sleep=time.sleep):
        self.connect_timeout = connect_timeout
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.client_factory = client_factory
        self.sleep = sleep
        self.logger = logger

    def collect_files(self, workspace_root: Path) -> Tuple[List[str], List[Tuple[Path, str]]]:
        """Returns (relative dirs, [(local file, relative posix path)]) in walk order."""
        dirs, files = [], []
        for current, dir_names, file_names in os.walk(workspace_root):
            dir_names[:] = sorted(d for d in dir_names if d not in EXCLUDED_DIR_NAMES)
            rel_dir = Path(current).relative_to(workspace_root)
            for d in dir_names:
                dirs.append((rel_dir / d).as_posix())
            for name in sorted(file_names):
                local = Path(current) / name
                if local.is_symlink() and not local.exists():
                    continue
                files.append((local, (rel_dir / name).as_posix()))
        return dirs, files

    def transfer(self, workspace_root: Path, credential_path: Path, target: DeploymentTarget,
                 abort_event=None, build_id: Optional[str] = None) -> TransferResult:
        workspace_root = Path(workspace_root)
        if not workspace_root.is_dir():
            raise TransferFailed(f"Workspace {workspace_root} does not exist")

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = self._transfer_once(workspace_root, Path(credential_path), target, abort_event, build_id)
                result.attempts = attempt
                return result
            except TransferFailed as e:
                if attempt >= attempts or (abort_event is not None and abort_event.is_set()):
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                self.logger.warning(f"Transfer attempt {attempt}/{attempts} to {target.host} failed: {e}. Retrying in {delay:.0f}s.")
                self.sleep(delay)
        raise TransferFailed("Transfer did not run") # unreachable with attempts >= 1

    def _connect(self, credential_path: Path, target: DeploymentTarget):
        client = self.client_factory()
        if target.verify_host_key:
            client.load_system_host_keys()
            if target.known_hosts_file:
                try:
                    client.load_host_keys(os.path.expanduser(target.known_hosts_file))
                except IOError as e:
                    client.close()
                    raise TransferFailed(f"Could not load known hosts from {target.known_hosts_file}: {e}")
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            self.logger.warning(
                f"Host key verification DISABLED for {target.host}; an unknown host key will be trusted without prompting."
            )
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        self.logger.info(f"Connecting to {target.auth_principal}@{target.host}:{target.port}")
        try:
            client.connect(
                hostname=target.host,
                port=target.port,
                username=target.auth_principal,
                key_filename=str(credential_path),
                timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise TransferFailed(f"Authentication to {target.host} as {target.auth_principal} rejected: {e}")
        except paramiko.BadHostKeyException as e:
            client.close()
            raise TransferFailed(f"Host key mismatch for {target.host}: {e}")
        except (paramiko.SSHException, socket.error) as e:
            client.close()
            raise TransferFailed(f"Could not open SSH session to {target.host}:{target.port}: {e}")
        return client

    def _transfer_once(self, workspace_root: Path, credential_path: Path, target: DeploymentTarget,
                       abort_event, build_id: Optional[str]) -> TransferResult:
        dirs, files = self.collect_files(workspace_root)
        live_path = target.remote_path.rstrip("/") or "/"
        suffix = (build_id or str(int(time.time())))[:8]
        dest_root = f"{live_path}.staging-{suffix}" if target.atomic else live_path

        result = TransferResult(host=target.host, remote_path=live_path, atomic=target.atomic)
        client = self._connect(credential_path, target)
        sftp = None
        try:
            sftp = client.open_sftp()
            if target.atomic and self._exists(sftp, dest_root):
                self._remove_tree(sftp, dest_root)
            self._makedirs(sftp, dest_root)
            for rel_dir in dirs:
                self._makedirs(sftp, posixpath.join(dest_root, rel_dir))

            for local, rel_path in files:
                if abort_event is not None and abort_event.is_set():
                    raise BuildAborted(f"Transfer aborted after {result.files_copied}/{len(files)} files")
                remote = posixpath.join(dest_root, rel_path)
                attrs = sftp.put(str(local), remote)
                result.files_copied += 1
                result.bytes_copied += getattr(attrs, "st_size", None) or local.stat().st_size

            if target.atomic:
                self._swap(sftp, dest_root, live_path, suffix)
        except (IOError, paramiko.SSHException, socket.error) as e:
            raise TransferFailed(
                f"Transfer to {target.host}:{live_path} failed after {result.files_copied}/{len(files)} files: {e}"
            )
        finally:
            if sftp is not None:
                sftp.close()
            client.close()

        self.logger.info(
            f"Copied {result.files_copied} files ({result.bytes_copied} bytes) to {target.host}:{live_path}"
        )
        return result

    def _exists(self, sftp, path: str) -> bool:
        try:
            sftp.stat(path)
            return True
        except IOError:
            return False

    def _makedirs(self, sftp, path: str):
        current = "/" if path.startswith("/") else ""
        for part in [p for p in path.split("/") if p]:
            current = posixpath.join(current, part) if current else part
            if not self._exists(sftp, current):
                sftp.mkdir(current)

    def _remove_tree(self, sftp, path: str):
        for entry in sftp.listdir_attr(path):
            child = posixpath.join(path, entry.filename)
            if stat.S_ISDIR(entry.st_mode):
                self._remove_tree(sftp, child)
            else:
                sftp.remove(child)
        sftp.rmdir(path)

    def _swap(self, sftp, staging: str, live: str, suffix: str):
        previous = f"{live}.previous-{suffix}"
        had_live = self._exists(sftp, live)
        if had_live:
            sftp.posix_rename(live, previous)
        sftp.posix_rename(staging, live)
        self.logger.info(f"Swapped {staging} into place at {live}")
        if had_live:
            self._remove_tree(sftp, previous)
