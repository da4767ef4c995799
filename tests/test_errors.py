from pydeployer_engine.errors import (
    BuildAborted,
    CleanupFailed,
    CredentialHardenFailed,
    InternalError,
    TransferFailed,
    TriggerRejected,
)


def test_default_fatality():
    assert TransferFailed("x").fatal
    assert BuildAborted("x").fatal
    assert InternalError("x").fatal
    assert not CredentialHardenFailed("x").fatal
    assert not CleanupFailed("x").fatal
    assert not TriggerRejected("x").fatal


def test_fatality_can_be_set_per_instance():
    error = CredentialHardenFailed("required step failed", fatal=True)
    assert error.fatal
    assert error.exit_code == 12
    assert not CredentialHardenFailed.fatal


def test_internal_error_kind_and_exit_code():
    error = InternalError("RuntimeError: boom")
    assert error.kind == "InternalError"
    assert error.exit_code == 1
    assert error.message == "RuntimeError: boom"
