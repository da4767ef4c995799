"""Error taxonomy for the deployment pipeline.

Every pipeline error knows whether it is fatal to a build and which process
exit code the CLI should return when it ends one. The orchestrator reads
`fatal` when a stage raises: a fatal error skips the remaining stages, a
non-fatal one is recorded on the stage and the pipeline carries on.
"""
from typing import Optional

EXIT_SUCCESS = 0
EXIT_INTERNAL_ERROR = 1


class PipelineError(Exception):
    kind = "PipelineError"
    fatal = True
    exit_code = EXIT_INTERNAL_ERROR

    def __init__(self, message: str = "", fatal: Optional[bool] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        if fatal is not None:
            self.fatal = fatal


class InternalError(PipelineError):
    """An unexpected exception escaped a stage."""
    kind = "InternalError"


class ConfigError(PipelineError):
    kind = "ConfigError"


class TriggerRejected(PipelineError):
    """Bad payload or branch mismatch. The notification is dropped."""
    kind = "TriggerRejected"
    fatal = False


class CheckoutFailed(PipelineError):
    kind = "CheckoutFailed"
    exit_code = 10


class CredentialUnavailable(PipelineError):
    kind = "CredentialUnavailable"
    exit_code = 11


class CredentialHardenFailed(PipelineError):
    # Non-fatal unless one of the failed steps is listed in hardening.fatal_steps.
    kind = "CredentialHardenFailed"
    fatal = False
    exit_code = 12


class TransferFailed(PipelineError):
    kind = "TransferFailed"
    exit_code = 13


class BuildAborted(PipelineError):
    kind = "BuildAborted"
    exit_code = 14


class CleanupFailed(PipelineError):
    kind = "CleanupFailed"
    fatal = False
