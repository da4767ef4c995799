from pathlib import Path
from typing import List

from .logger_setup import logger
from .models import HardeningReport, HardeningStepResult
from .permissions import (
    GrantFull,
    GrantRead,
    PermissionAdapter,
    PermissionOperation,
    RemoveBroadAccess,
    RemoveInheritedACL,
    SetReadOnly,
)


class PermissionHardener:
    """Restricts a credential file to the build and admin principals.

    Every step runs even when an earlier one failed; failures end up in the
    report rather than being raised. Deciding whether a failed step matters
    is left to the caller.
    """

    def __init__(self, adapter: PermissionAdapter, build_principal: str, admin_principal: str):
        self.adapter = adapter
        self.build_principal = build_principal
        self.admin_principal = admin_principal
        self.logger = logger

    def operations(self) -> List[PermissionOperation]:
        return [
            RemoveInheritedACL(),
            GrantRead(self.build_principal),
            GrantFull(self.admin_principal),
            RemoveBroadAccess(),
            SetReadOnly(),
        ]

    def harden(self, credential_path: Path) -> HardeningReport:
        report = HardeningReport(path=str(credential_path))
        for operation in self.operations():
            step = HardeningStepResult(operation=operation.name, principal=operation.principal)
            try:
                self.adapter.apply(Path(credential_path), operation)
            except Exception as e:
                # Any adapter error fails this step only.
                step.ok = False
                step.error = str(e) or type(e).__name__
                self.logger.warning(f"Hardening step {operation.name} failed on {credential_path}: {step.error}")
            report.steps.append(step)

        if report.ok:
            self.logger.info(f"Hardened {credential_path} (read: {self.build_principal}, full: {self.admin_principal})")
        else:
            self.logger.warning(
                f"Hardening of {credential_path} finished with failed steps: {', '.join(report.failed_operations)}"
            )
        return report
