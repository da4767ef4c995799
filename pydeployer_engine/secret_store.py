import os
import re
from urllib.parse import quote
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .logger_setup import logger

ENV_PREFIX = "PYDEPLOYER_SECRET_"


class SecretStoreError(Exception):
    pass


@dataclass
class SecretRecord:
    material: str
    owner_principal: Optional[str] = None

    def __repr__(self) -> str:
        return f"SecretRecord(material=***, owner_principal={self.owner_principal!r})"


def env_var_name(credential_id: str) -> str:
    """'ec2-ssh-key' -> 'PYDEPLOYER_SECRET_EC2_SSH_KEY'"""
    return ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()


class EnvSecretStore:
    """Reads key material from the process environment.

    Either the variable itself holds the material, or `<NAME>_FILE` names a
    file holding it (the way CI runners mount secrets).
    """

    def __init__(self, environ=None):
        self.environ = environ if environ is not None else os.environ

    def lookup(self, credential_id: str) -> SecretRecord:
        name = env_var_name(credential_id)
        material = self.environ.get(name)
        if material is None and self.environ.get(f"{name}_FILE"):
            secret_file = Path(self.environ[f"{name}_FILE"])
            try:
                material = secret_file.read_text(encoding="utf-8")
            except OSError as e:
                raise SecretStoreError(f"Could not read secret file for '{credential_id}': {e}")
        if material is None:
            raise SecretStoreError(f"No secret configured for '{credential_id}' (expected {name} or {name}_FILE)")
        return SecretRecord(material=material, owner_principal=self.environ.get(f"{name}_OWNER"))


class HttpSecretStore:
    """Client for a secret service exposing GET {base_url}/credentials/{id}."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = httpx.Timeout(connect=5.0, read=timeout, write=5.0, pool=5.0)
        self._client = client

    def lookup(self, credential_id: str) -> SecretRecord:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        url = f"{self.base_url}/credentials/{quote(credential_id, safe='')}"
        try:
            if self._client is not None:
                response = self._client.get(url, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(url, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as hse:
            raise SecretStoreError(f"Secret store returned HTTP {hse.response.status_code} for '{credential_id}'")
        except httpx.RequestError as re_err:
            raise SecretStoreError(f"Secret store unreachable at {self.base_url}: {re_err}")
        except ValueError:
            raise SecretStoreError(f"Secret store returned a non-JSON body for '{credential_id}'")

        if not isinstance(data, dict):
            raise SecretStoreError(f"Unexpected secret store response for '{credential_id}'")
        logger.debug(f"Secret store lookup for '{credential_id}' answered by {self.base_url}")
        return SecretRecord(material=data.get("material") or "", owner_principal=data.get("owner_principal"))


def create_secret_store(store_config):
    if store_config.type == "http":
        token = os.environ.get(store_config.token_env) if store_config.token_env else None
        return HttpSecretStore(store_config.base_url, token=token)
    return EnvSecretStore()
