import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ConfigError
from .models import DeploymentTarget

CONFIG_FILE_NAME = "pipeline.yaml"
HARDENING_OPERATIONS = ["RemoveInheritedACL", "GrantRead", "GrantFull", "RemoveBroadAccess", "SetReadOnly"]


def default_admin_principal() -> str:
    return "SYSTEM" if os.name == "nt" else "root"


@dataclass
class RepositoryConfig:
    url: str
    id: Optional[str] = None # If set, pushes from other repositories are rejected

    def to_dict(self) -> dict:
        return {"id": self.id, "url": self.url}


@dataclass
class HardeningConfig:
    adapter: str = "auto" # "auto", "posix" or "windows"
    build_principal: str = field(default_factory=getpass.getuser)
    admin_principal: str = field(default_factory=default_admin_principal)
    fatal_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "adapter": self.adapter,
            "build_principal": self.build_principal,
            "admin_principal": self.admin_principal,
            "fatal_steps": list(self.fatal_steps),
        }


@dataclass
class TransferConfig:
    retries: int = 0
    backoff_seconds: float = 2.0
    connect_timeout: float = 30.0

    def to_dict(self) -> dict:
        return {"retries": self.retries, "backoff_seconds": self.backoff_seconds, "connect_timeout": self.connect_timeout}


@dataclass
class SecretStoreConfig:
    type: str = "env" # "env" or "http"
    base_url: Optional[str] = None
    token_env: Optional[str] = None # Name of the env var holding the bearer token

    def to_dict(self) -> dict:
        return {"type": self.type, "base_url": self.base_url, "token_env": self.token_env}


@dataclass
class NotifyConfig:
    webhooks: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"webhooks": list(self.webhooks)}


@dataclass
class PipelineConfig:
    name: str
    branch: str
    repository: RepositoryConfig
    credential_id: str
    target: DeploymentTarget
    hardening: HardeningConfig = field(default_factory=HardeningConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    secret_store: SecretStoreConfig = field(default_factory=SecretStoreConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    stage_timeout_seconds: Optional[float] = None
    raw_config: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "branch": self.branch,
            "repository": self.repository.to_dict(),
            "credential_id": self.credential_id,
            "target": self.target.to_dict(),
            "hardening": self.hardening.to_dict(),
            "transfer": self.transfer.to_dict(),
            "secret_store": self.secret_store.to_dict(),
            "notify": self.notify.to_dict(),
            "stage_timeout_seconds": self.stage_timeout_seconds,
        }

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'PipelineConfig':
        if config_path is None:
            config_path = Path(os.environ.get(
                "PYDEPLOYER_CONFIG", Path(__file__).resolve().parent.parent / CONFIG_FILE_NAME))
        config_path = Path(config_path)
        if not config_path.is_file():
            raise ConfigError(f"Pipeline config not found: {config_path}")
        with open(config_path, 'r', encoding='utf-8') as f:
            raw_yaml_content = f.read()
        try:
            return cls.from_yaml(config_path, raw_yaml_content)
        except yaml.YAMLError as ye:
            raise ConfigError(f"YAML syntax error in {config_path.name}: {ye}")
        except (ValueError, TypeError) as ve:
            raise ConfigError(str(ve))

    @classmethod
    def from_yaml(cls, file_path: Path, raw_yaml_content: str) -> 'PipelineConfig':
        config = yaml.safe_load(raw_yaml_content) or {}
        data = config.get('pipeline', {})
        missing = [key for key in ('name', 'branch', 'repository', 'credential_id', 'target') if key not in data]
        if missing:
            raise ValueError(f"Pipeline config {file_path.name} is missing required fields under 'pipeline': {missing}")

        repo_data = data['repository']
        if not isinstance(repo_data, dict) or 'url' not in repo_data:
            raise ValueError(f"Repository configuration in {file_path.name} must be a mapping with a 'url' field.")
        repository = RepositoryConfig(url=repo_data['url'], id=repo_data.get('id'))

        target_data = data['target']
        if not isinstance(target_data, dict) or not all(key in target_data for key in ['host', 'remote_path', 'auth_principal']):
            raise ValueError(
                f"Target configuration in {file_path.name} must contain 'host', 'remote_path' and 'auth_principal'."
            )
        verify_host_key = target_data.get('verify_host_key', True)
        if not isinstance(verify_host_key, bool):
            raise ValueError(f"'verify_host_key' in {file_path.name} must be true or false. Found: {verify_host_key!r}")
        try:
            port = int(target_data.get('port', 22))
        except ValueError:
            raise ValueError(f"Invalid 'port' value '{target_data.get('port')}' in {file_path.name}. It must be an integer.")
        target = DeploymentTarget(
            host=target_data['host'],
            remote_path=target_data['remote_path'],
            auth_principal=target_data['auth_principal'],
            port=port,
            verify_host_key=verify_host_key,
            known_hosts_file=target_data.get('known_hosts_file'),
            atomic=bool(target_data.get('atomic', False)),
        )

        hardening_data = data.get('hardening') or {}
        hardening = HardeningConfig(**{k: v for k, v in hardening_data.items() if v is not None})
        if hardening.adapter not in ("auto", "posix", "windows"):
            raise ValueError(f"Unknown hardening adapter '{hardening.adapter}' in {file_path.name}.")
        unknown_steps = [s for s in hardening.fatal_steps if s not in HARDENING_OPERATIONS]
        if unknown_steps:
            raise ValueError(
                f"Unknown hardening steps {unknown_steps} in {file_path.name}. Valid steps: {HARDENING_OPERATIONS}"
            )

        transfer_data = data.get('transfer') or {}
        try:
            transfer = TransferConfig(
                retries=int(transfer_data.get('retries', 0)),
                backoff_seconds=float(transfer_data.get('backoff_seconds', 2.0)),
                connect_timeout=float(transfer_data.get('connect_timeout', 30.0)),
            )
        except ValueError:
            raise ValueError(f"Transfer configuration in {file_path.name} must contain numeric values.")
        if transfer.retries < 0:
            raise ValueError(f"'transfer.retries' in {file_path.name} must not be negative.")

        store_data = data.get('secret_store') or {}
        secret_store = SecretStoreConfig(**store_data)
        if secret_store.type not in ("env", "http"):
            raise ValueError(f"Unknown secret store type '{secret_store.type}' in {file_path.name}.")
        if secret_store.type == "http" and not secret_store.base_url:
            raise ValueError(f"Secret store of type 'http' in {file_path.name} requires 'base_url'.")

        notify_data = data.get('notify') or {}
        notify = NotifyConfig(webhooks=list(notify_data.get('webhooks') or []))

        stage_timeout = data.get('stage_timeout_seconds')
        if stage_timeout is not None:
            stage_timeout = float(stage_timeout)
            if stage_timeout <= 0:
                raise ValueError(f"'stage_timeout_seconds' in {file_path.name} must be positive.")

        return cls(
            name=data['name'],
            branch=data['branch'],
            repository=repository,
            credential_id=data['credential_id'],
            target=target,
            hardening=hardening,
            transfer=transfer,
            secret_store=secret_store,
            notify=notify,
            stage_timeout_seconds=stage_timeout,
            raw_config=raw_yaml_content,
        )
