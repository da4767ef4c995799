import os
import stat
import sys

import pytest

from pydeployer_engine.hardener import PermissionHardener
from pydeployer_engine.permissions import (
    GrantRead,
    PermissionAdapterError,
    PosixPermissionAdapter,
    SetReadOnly,
    WindowsPermissionAdapter,
    create_permission_adapter,
)

from fakes import FakePermissionAdapter

BUILD = "deploy-runner"
ADMIN = "SYSTEM"


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "ec2-ssh-key.key"
    path.write_text("material\n")
    return path


def test_access_set_is_reduced_to_build_and_admin(key_file):
    adapter = FakePermissionAdapter(owner=BUILD)
    report = PermissionHardener(adapter, BUILD, ADMIN).harden(key_file)

    assert report.ok
    assert adapter.access_set(key_file) == {BUILD: frozenset({"read"}), ADMIN: frozenset({"full"})}


def test_each_step_runs_even_after_a_failure(key_file):
    adapter = FakePermissionAdapter(owner=BUILD, failing={"RemoveInheritedACL"})
    report = PermissionHardener(adapter, BUILD, ADMIN).harden(key_file)

    assert not report.ok
    assert report.failed_operations == ["RemoveInheritedACL"]
    assert len(adapter.applied) == 5
    assert "Access is denied" in report.warnings[0]
    # Inherited broad entries are cleaned up by RemoveBroadAccess anyway.
    assert set(adapter.access_set(key_file)) == {BUILD, ADMIN}


def test_failed_broad_access_removal_leaves_only_that_gap(key_file):
    adapter = FakePermissionAdapter(owner=BUILD, failing={"RemoveBroadAccess"})
    report = PermissionHardener(adapter, BUILD, ADMIN).harden(key_file)

    access = adapter.access_set(key_file)
    assert report.failed_operations == ["RemoveBroadAccess"]
    assert set(access) - {BUILD, ADMIN} == {"Authenticated Users"}


def test_harden_is_idempotent(key_file):
    adapter = FakePermissionAdapter(owner=BUILD)
    hardener = PermissionHardener(adapter, BUILD, ADMIN)

    first = hardener.harden(key_file)
    after_first = adapter.access_set(key_file)
    second = hardener.harden(key_file)

    assert first.ok and second.ok
    assert adapter.access_set(key_file) == after_first


def test_report_serializes_principals(key_file):
    report = PermissionHardener(FakePermissionAdapter(owner=BUILD), BUILD, ADMIN).harden(key_file)
    steps = report.to_dict()["steps"]
    assert steps[1] == {"operation": "GrantRead", "principal": BUILD, "ok": True, "error": None}
    assert steps[2]["principal"] == ADMIN


class RecordingRunner:
    def __init__(self, returncode=0, stderr=""):
        self.commands = []
        self.returncode = returncode
        self.stderr = stderr

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)

        class Result:
            pass

        result = Result()
        result.returncode = self.returncode
        result.stdout = ""
        result.stderr = self.stderr
        return result


def test_windows_adapter_issues_icacls_commands(key_file):
    runner = RecordingRunner()
    PermissionHardener(WindowsPermissionAdapter(runner=runner), "builder", "SYSTEM").harden(key_file)

    path = str(key_file)
    assert runner.commands == [
        ["icacls", path, "/inheritance:r"],
        ["icacls", path, "/grant:r", "builder:(R)"],
        ["icacls", path, "/grant:r", "SYSTEM:(F)"],
        ["icacls", path, "/remove:g", "Everyone", "BUILTIN\\Users", "NT AUTHORITY\\Authenticated Users"],
        ["attrib", "+R", path],
    ]


def test_windows_adapter_reports_nonzero_exit(key_file):
    runner = RecordingRunner(returncode=5, stderr="Access is denied.")
    with pytest.raises(PermissionAdapterError, match="Access is denied"):
        WindowsPermissionAdapter(runner=runner).apply(key_file, GrantRead("builder"))


def test_unknown_adapter_name():
    with pytest.raises(ValueError):
        create_permission_adapter("beos")


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
class TestPosixAdapter:
    @pytest.fixture
    def current_user(self):
        import pwd
        return pwd.getpwuid(os.getuid()).pw_name

    def test_mode_is_owner_read_only(self, key_file, current_user):
        os.chmod(key_file, 0o664)
        report = PermissionHardener(PosixPermissionAdapter(), current_user, "root").harden(key_file)

        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o400
        # setfacl may be missing or unsupported on the test filesystem.
        assert set(report.failed_operations) <= {"RemoveInheritedACL"}

    def test_second_run_keeps_mode(self, key_file, current_user):
        hardener = PermissionHardener(PosixPermissionAdapter(), current_user, "root")
        hardener.harden(key_file)
        hardener.harden(key_file)
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o400

    def test_full_access_for_non_root_admin_is_reported(self, key_file, current_user):
        if os.getuid() == 0:
            pytest.skip("needs a non-root principal")
        report = PermissionHardener(PosixPermissionAdapter(), current_user, current_user).harden(key_file)
        assert "GrantFull" in report.failed_operations
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o400

    def test_set_read_only_clears_write_bits(self, key_file):
        os.chmod(key_file, 0o666)
        PosixPermissionAdapter().apply(key_file, SetReadOnly())
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o444


class ExplodingAdapter(FakePermissionAdapter):
    def grant_full(self, path, principal):
        raise RuntimeError("adapter bug")


def test_non_os_error_fails_only_its_step(key_file):
    adapter = ExplodingAdapter(owner=BUILD)
    report = PermissionHardener(adapter, BUILD, ADMIN).harden(key_file)

    assert report.failed_operations == ["GrantFull"]
    assert report.steps[-1].operation == "SetReadOnly" and report.steps[-1].ok


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_unknown_build_principal_is_reported_and_remaining_steps_run(key_file):
    os.chmod(key_file, 0o644)
    report = PermissionHardener(PosixPermissionAdapter(), "no-such-user-xyz", "root").harden(key_file)

    assert "GrantRead" in report.failed_operations
    assert "Unknown principal 'no-such-user-xyz'" in report.steps[1].error
    assert [s.operation for s in report.steps] == [
        "RemoveInheritedACL", "GrantRead", "GrantFull", "RemoveBroadAccess", "SetReadOnly"]
    assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o400
