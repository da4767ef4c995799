import httpx
import pytest

from pydeployer_engine.config import SecretStoreConfig
from pydeployer_engine.secret_store import (
    EnvSecretStore,
    HttpSecretStore,
    SecretRecord,
    SecretStoreError,
    create_secret_store,
    env_var_name,
)


def test_env_var_name():
    assert env_var_name("ec2-ssh-key") == "PYDEPLOYER_SECRET_EC2_SSH_KEY"
    assert env_var_name("prod.deploy") == "PYDEPLOYER_SECRET_PROD_DEPLOY"


class TestEnvSecretStore:
    def test_material_from_variable(self):
        store = EnvSecretStore({"PYDEPLOYER_SECRET_EC2_SSH_KEY": "key", "PYDEPLOYER_SECRET_EC2_SSH_KEY_OWNER": "deploy"})
        record = store.lookup("ec2-ssh-key")
        assert record.material == "key"
        assert record.owner_principal == "deploy"

    def test_material_from_file(self, tmp_path):
        secret_file = tmp_path / "mounted"
        secret_file.write_text("from-file\n")
        record = EnvSecretStore({"PYDEPLOYER_SECRET_K_FILE": str(secret_file)}).lookup("k")
        assert record.material == "from-file\n"

    def test_unreadable_file(self, tmp_path):
        store = EnvSecretStore({"PYDEPLOYER_SECRET_K_FILE": str(tmp_path / "missing")})
        with pytest.raises(SecretStoreError, match="Could not read"):
            store.lookup("k")

    def test_missing(self):
        with pytest.raises(SecretStoreError, match="PYDEPLOYER_SECRET_K"):
            EnvSecretStore({}).lookup("k")


def http_store(handler, token="t0ken"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpSecretStore("https://secrets.example/", token=token, client=client)


class TestHttpSecretStore:
    def test_lookup(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"material": "key", "owner_principal": "deploy"})

        record = http_store(handler).lookup("ec2-ssh-key")

        assert record == SecretRecord(material="key", owner_principal="deploy")
        assert str(seen[0].url) == "https://secrets.example/credentials/ec2-ssh-key"
        assert seen[0].headers["Authorization"] == "Bearer t0ken"

    def test_http_error(self):
        with pytest.raises(SecretStoreError, match="HTTP 404"):
            http_store(lambda request: httpx.Response(404)).lookup("k")

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SecretStoreError, match="unreachable"):
            http_store(handler).lookup("k")

    def test_non_json_body(self):
        with pytest.raises(SecretStoreError, match="non-JSON"):
            http_store(lambda request: httpx.Response(200, text="<html>")).lookup("k")


def test_record_repr_hides_material():
    assert "s3cr3t" not in repr(SecretRecord(material="s3cr3t", owner_principal="deploy"))


def test_create_secret_store(monkeypatch):
    monkeypatch.setenv("MY_TOKEN", "abc")
    store = create_secret_store(SecretStoreConfig(type="http", base_url="https://s.example", token_env="MY_TOKEN"))
    assert isinstance(store, HttpSecretStore)
    assert store.token == "abc"
    assert isinstance(create_secret_store(SecretStoreConfig()), EnvSecretStore)


def test_credential_id_is_escaped_in_url():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"material": "key"})

    http_store(handler).lookup("team/key?version=2")

    assert seen[0].url.raw_path.startswith(b"/credentials/team%2Fkey%3F")
    assert seen[0].url.query == b""
