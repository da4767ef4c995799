import os
from pathlib import Path

from .errors import CredentialUnavailable
from .logger_setup import logger
from .models import BuildContext, Credential
from .secret_store import SecretStoreError

CREDENTIALS_DIR_NAME = ".credentials"


class CredentialBroker:
    """Turns a credential id into a key file inside one build's workspace."""

    def __init__(self, secret_store):
        self.secret_store = secret_store
        self.logger = logger

    def credential_path(self, context: BuildContext, credential_id: str) -> Path:
        safe_name = "".join(c if c.isalnum() or c in "-_." else "_" for c in credential_id)
        return context.workspace_root / CREDENTIALS_DIR_NAME / f"{safe_name}.key"

    def materialize(self, credential_id: str, context: BuildContext) -> Credential:
        if context.credential_path is not None:
            raise CredentialUnavailable(
                f"Build {context.build_id} already holds a credential; refusing to materialize '{credential_id}'"
            )

        try:
            record = self.secret_store.lookup(credential_id)
        except SecretStoreError as e:
            raise CredentialUnavailable(f"Lookup of '{credential_id}' failed: {e}")
        except Exception as e:
            self.logger.error(f"Unexpected secret store error for '{credential_id}': {type(e).__name__}")
            raise CredentialUnavailable(f"Lookup of '{credential_id}' failed: {type(e).__name__}")

        if not record.material or not record.material.strip():
            raise CredentialUnavailable(f"Secret store returned empty material for '{credential_id}'")

        path = self.credential_path(context, credential_id)
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        material = record.material if record.material.endswith("\n") else record.material + "\n"

        # O_EXCL: the file is created by this call or not at all.
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            raise CredentialUnavailable(f"Credential file {path} already exists in build workspace")
        except OSError as e:
            raise CredentialUnavailable(f"Could not create credential file {path}: {e.strerror}")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(material)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise CredentialUnavailable(f"Could not write credential file {path}: {e.strerror}")

        context.credential_path = path
        self.logger.info(f"Materialized credential '{credential_id}' for build {context.build_id} at {path}")
        return Credential(
            credential_id=credential_id,
            path=path,
            owner_principal=record.owner_principal,
            build_id=context.build_id,
        )
