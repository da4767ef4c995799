"""Typed filesystem permission operations and the adapters that apply them.

The hardener only ever speaks in terms of the operations below; how each one
maps onto the host OS is the adapter's business.
"""
import os
import shutil
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .logger_setup import logger


class PermissionAdapterError(OSError):
    pass


@dataclass(frozen=True)
class PermissionOperation:
    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def principal(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class RemoveInheritedACL(PermissionOperation):
    pass


@dataclass(frozen=True)
class GrantRead(PermissionOperation):
    target_principal: str = ""

    @property
    def principal(self) -> Optional[str]:
        return self.target_principal


@dataclass(frozen=True)
class GrantFull(PermissionOperation):
    target_principal: str = ""

    @property
    def principal(self) -> Optional[str]:
        return self.target_principal


@dataclass(frozen=True)
class RemoveBroadAccess(PermissionOperation):
    pass


@dataclass(frozen=True)
class SetReadOnly(PermissionOperation):
    pass


class PermissionAdapter:
    """Base adapter: dispatches an operation to the matching method."""

    def apply(self, path: Path, operation: PermissionOperation):
        if isinstance(operation, RemoveInheritedACL):
            self.remove_inherited(path)
        elif isinstance(operation, GrantRead):
            self.grant_read(path, operation.target_principal)
        elif isinstance(operation, GrantFull):
            self.grant_full(path, operation.target_principal)
        elif isinstance(operation, RemoveBroadAccess):
            self.remove_broad_access(path)
        elif isinstance(operation, SetReadOnly):
            self.set_read_only(path)
        else:
            raise PermissionAdapterError(f"Unsupported permission operation: {operation!r}")

    def remove_inherited(self, path: Path):
        raise NotImplementedError

    def grant_read(self, path: Path, principal: str):
        raise NotImplementedError

    def grant_full(self, path: Path, principal: str):
        raise NotImplementedError

    def remove_broad_access(self, path: Path):
        raise NotImplementedError

    def set_read_only(self, path: Path):
        raise NotImplementedError


class PosixPermissionAdapter(PermissionAdapter):
    """Mode bits, plus `setfacl` for extended ACL entries when it is installed."""

    def __init__(self, runner=subprocess.run):
        self.runner = runner

    def _mode(self, path: Path) -> int:
        return stat.S_IMODE(os.stat(path).st_mode)

    def remove_inherited(self, path: Path):
        # POSIX has no inheritance as such, but a parent's default ACL is
        # copied onto new files. Strip any extended entries.
        if shutil.which("setfacl") is None:
            logger.debug(f"setfacl not available; no extended ACL entries to strip on {path}")
            return
        result = self.runner(["setfacl", "-b", str(path)], capture_output=True, text=True, check=False)
        if result.returncode != 0:
            raise PermissionAdapterError(f"setfacl -b failed ({result.returncode}): {result.stderr.strip()}")

    def _lookup_uid(self, principal: str) -> int:
        import pwd
        try:
            return pwd.getpwnam(principal).pw_uid
        except KeyError:
            raise PermissionAdapterError(f"Unknown principal '{principal}'")

    def grant_read(self, path: Path, principal: str):
        uid = self._lookup_uid(principal)
        if os.stat(path).st_uid != uid:
            shutil.chown(path, user=uid)
        os.chmod(path, self._mode(path) | stat.S_IRUSR)

    def grant_full(self, path: Path, principal: str):
        if self._lookup_uid(principal) != 0:
            raise PermissionAdapterError(
                f"Only the superuser holds unconditional access on POSIX; cannot grant full access to '{principal}'"
            )
        # uid 0 bypasses mode bits.

    def remove_broad_access(self, path: Path):
        os.chmod(path, self._mode(path) & ~(stat.S_IRWXG | stat.S_IRWXO))

    def set_read_only(self, path: Path):
        os.chmod(path, self._mode(path) & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))


class WindowsPermissionAdapter(PermissionAdapter):
    """Applies operations through `icacls` and `attrib`."""

    BROAD_PRINCIPALS = ["Everyone", "BUILTIN\\Users", "NT AUTHORITY\\Authenticated Users"]

    def __init__(self, runner=subprocess.run):
        self.runner = runner

    def _run(self, cmd: List[str]):
        result = self.runner(cmd, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise PermissionAdapterError(f"{cmd[0]} exited with {result.returncode}: {output}")

    def remove_inherited(self, path: Path):
        self._run(["icacls", str(path), "/inheritance:r"])

    def grant_read(self, path: Path, principal: str):
        self._run(["icacls", str(path), "/grant:r", f"{principal}:(R)"])

    def grant_full(self, path: Path, principal: str):
        self._run(["icacls", str(path), "/grant:r", f"{principal}:(F)"])

    def remove_broad_access(self, path: Path):
        self._run(["icacls", str(path), "/remove:g", *self.BROAD_PRINCIPALS])

    def set_read_only(self, path: Path):
        self._run(["attrib", "+R", str(path)])


def create_permission_adapter(name: str = "auto") -> PermissionAdapter:
    if name == "auto":
        name = "windows" if os.name == "nt" else "posix"
    if name == "windows":
        return WindowsPermissionAdapter()
    if name == "posix":
        return PosixPermissionAdapter()
    raise ValueError(f"Unknown permission adapter: {name}")
