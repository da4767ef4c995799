"""Builders for a fully wired pipeline running against the fakes."""
from types import SimpleNamespace

from pydeployer_engine.config import HardeningConfig, PipelineConfig, RepositoryConfig, TransferConfig
from pydeployer_engine.credential_broker import CredentialBroker
from pydeployer_engine.hardener import PermissionHardener
from pydeployer_engine.history import BuildHistory
from pydeployer_engine.models import DeploymentTarget
from pydeployer_engine.notifier import Notifier
from pydeployer_engine.orchestrator import BuildOrchestrator
from pydeployer_engine.transfer_agent import TransferAgent
from pydeployer_engine.workspace_manager import WorkspaceManager

from fakes import (
    PRIVATE_KEY,
    CountingCleanupHandler,
    FakeCheckout,
    FakePermissionAdapter,
    FakeRemote,
    InMemorySecretStore,
)


def make_config(**overrides) -> PipelineConfig:
    target = overrides.pop("target", None) or DeploymentTarget(
        host="target.host", remote_path="/var/www/html", auth_principal="ubuntu")
    values = dict(
        name="website",
        branch="main",
        repository=RepositoryConfig(url="https://git.example.invalid/acme/website.git", id="acme/website"),
        credential_id="ec2-ssh-key",
        target=target,
        hardening=HardeningConfig(adapter="posix", build_principal="deploy-runner", admin_principal="SYSTEM"),
        transfer=TransferConfig(retries=0, backoff_seconds=0.0),
    )
    values.update(overrides)
    return PipelineConfig(**values)


def make_pipeline(tmp_path, config=None, secrets=None, remote=None, checkout=None, adapter=None,
                  cleanup_handler=None, keep_workspaces=False):
    config = config or make_config()
    remote = remote or FakeRemote()
    adapter = adapter or FakePermissionAdapter()
    store = InMemorySecretStore({"ec2-ssh-key": PRIVATE_KEY} if secrets is None else secrets)
    checkout = checkout or FakeCheckout()
    cleanup_handler = cleanup_handler or CountingCleanupHandler()
    notifier = Notifier()
    signals = []
    notifier.subscribe(signals.append)

    orchestrator = BuildOrchestrator(
        config=config,
        history=BuildHistory(tmp_path / "data"),
        workspace_manager=WorkspaceManager(tmp_path / "data"),
        checkout=checkout,
        broker=CredentialBroker(store),
        hardener=PermissionHardener(adapter, config.hardening.build_principal, config.hardening.admin_principal),
        transfer_agent=TransferAgent(
            retries=config.transfer.retries,
            backoff_seconds=config.transfer.backoff_seconds,
            client_factory=remote.client_factory,
            sleep=lambda seconds: None,
        ),
        cleanup_handler=cleanup_handler,
        notifier=notifier,
        logs_dir=tmp_path / "data" / "build_logs",
        keep_workspaces=keep_workspaces,
    )
    return SimpleNamespace(
        orchestrator=orchestrator, config=config, remote=remote, adapter=adapter, store=store,
        checkout=checkout, cleanup=cleanup_handler, signals=signals,
    )


