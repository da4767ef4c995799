import os
import stat
import sys

import pytest

from pydeployer_engine.cleanup import CleanupHandler
from pydeployer_engine.credential_broker import CredentialBroker
from pydeployer_engine.errors import CleanupFailed, CredentialUnavailable
from pydeployer_engine.models import BuildContext, DeploymentTarget

from fakes import PRIVATE_KEY, InMemorySecretStore


@pytest.fixture
def context(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return BuildContext(
        build_id="b1",
        revision="abc123",
        workspace_root=workspace,
        source_dir=workspace / "source",
        target=DeploymentTarget(host="h", remote_path="/srv", auth_principal="deploy"),
    )


def test_materialize_writes_key_inside_workspace(context):
    store = InMemorySecretStore({"ec2-ssh-key": PRIVATE_KEY}, owner="deploy-runner")
    credential = CredentialBroker(store).materialize("ec2-ssh-key", context)

    assert credential.path == context.workspace_root / ".credentials" / "ec2-ssh-key.key"
    assert credential.path.read_text() == PRIVATE_KEY
    assert credential.owner_principal == "deploy-runner"
    assert credential.build_id == "b1"
    assert context.credential_path == credential.path


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX mode bits")
def test_key_file_is_created_owner_only(context):
    credential = CredentialBroker(InMemorySecretStore({"k": "material"})).materialize("k", context)
    assert stat.S_IMODE(os.stat(credential.path).st_mode) == 0o600
    assert credential.path.read_text() == "material\n"


def test_unknown_credential(context):
    with pytest.raises(CredentialUnavailable, match="missing"):
        CredentialBroker(InMemorySecretStore({})).materialize("missing", context)
    assert context.credential_path is None


@pytest.mark.parametrize("material", ["", "  \n\t"])
def test_empty_material(context, material):
    with pytest.raises(CredentialUnavailable, match="empty"):
        CredentialBroker(InMemorySecretStore({"k": material})).materialize("k", context)
    assert not (context.workspace_root / ".credentials").exists()


def test_one_credential_per_build(context):
    broker = CredentialBroker(InMemorySecretStore({"a": "one", "b": "two"}))
    broker.materialize("a", context)
    with pytest.raises(CredentialUnavailable, match="already holds"):
        broker.materialize("b", context)


def test_unsafe_characters_in_id_stay_inside_workspace(context):
    broker = CredentialBroker(InMemorySecretStore({"../../etc/passwd": "x"}))
    credential = broker.materialize("../../etc/passwd", context)
    assert credential.path.parent == context.workspace_root / ".credentials"


def test_material_is_not_logged(context, caplog):
    caplog.set_level("DEBUG", logger="pydeployer")
    CredentialBroker(InMemorySecretStore({"k": PRIVATE_KEY})).materialize("k", context)
    assert "ZmFrZS1rZXktbWF0ZXJpYWw" not in caplog.text


class TestCleanupHandler:
    def test_deletes_file_and_empty_directory(self, context):
        credential = CredentialBroker(InMemorySecretStore({"k": "x"})).materialize("k", context)
        os.chmod(credential.path, 0o400)

        CleanupHandler().cleanup(credential.path)

        assert not credential.path.exists()
        assert not credential.path.parent.exists()

    def test_nothing_materialized(self):
        CleanupHandler().cleanup(None)

    def test_already_deleted(self, tmp_path):
        CleanupHandler().cleanup(tmp_path / "gone.key")

    def test_unlink_error_is_cleanup_failed(self, tmp_path, monkeypatch):
        path = tmp_path / "k.key"
        path.write_text("x")

        def refuse(self, *args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(type(path), "unlink", refuse)
        with pytest.raises(CleanupFailed, match="Permission denied"):
            CleanupHandler().cleanup(path)
