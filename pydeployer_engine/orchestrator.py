import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .cleanup import CleanupHandler
from .config import PipelineConfig
from .credential_broker import CredentialBroker
from .errors import (
    EXIT_SUCCESS,
    BuildAborted,
    CheckoutFailed,
    CleanupFailed,
    CredentialHardenFailed,
    InternalError,
    PipelineError,
)
from .hardener import PermissionHardener
from .history import BuildHistory
from .logger_setup import close_build_logger, get_build_logger, logger
from .models import (
    Build,
    BuildContext,
    BuildStatus,
    Stage,
    StageName,
    StageState,
    utc_now,
)
from .notifier import Notifier
from .permissions import create_permission_adapter
from .scm_handler import SCMHandler
from .secret_store import create_secret_store
from .transfer_agent import TransferAgent
from .workspace_manager import WorkspaceManager

SOURCE_DIR_NAME = "source"


class BuildOrchestrator:
    """Runs builds one at a time, in arrival order, through the deployment stages.

    Checkout -> CredentialAcquire -> Harden -> Transfer, then Cleanup no matter
    what happened before it. A fatal error in any stage marks the rest of the
    pipeline SKIPPED and jumps straight to Cleanup; a non-fatal one is kept on
    its stage as a warning. Finished builds leave the in-memory registry and
    are served from history.
    """

    def __init__(self, config: PipelineConfig, history: BuildHistory, workspace_manager: WorkspaceManager,
                 checkout: SCMHandler, broker: CredentialBroker, hardener: PermissionHardener,
                 transfer_agent: TransferAgent, cleanup_handler: CleanupHandler, notifier: Notifier,
                 logs_dir: Optional[Path] = None, keep_workspaces: bool = False):
        self.config = config
        self.history = history
        self.workspace_manager = workspace_manager
        self.checkout = checkout
        self.broker = broker
        self.hardener = hardener
        self.transfer_agent = transfer_agent
        self.cleanup_handler = cleanup_handler
        self.notifier = notifier
        self.logs_dir = logs_dir
        self.keep_workspaces = keep_workspaces
        self.logger = logger

        self.builds: Dict[str, Build] = {}
        self.contexts: Dict[str, BuildContext] = {}
        self.futures: Dict[str, Future] = {}
        self._pending_aborts: Dict[str, str] = {}
        # Guards the build registry. Re-entrant so the trigger listener can
        # hold it across a coalescing check and the following enqueue.
        self.lock = threading.RLock()
        # A single worker keeps transfers to the shared target from overlapping.
        self.worker_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pydeployer-build")

    @classmethod
    def from_config(cls, config: PipelineConfig, data_dir: Path, secret_store=None, permission_adapter=None,
                    transfer_agent: Optional[TransferAgent] = None, checkout=None,
                    notifier: Optional[Notifier] = None, keep_workspaces: bool = False) -> 'BuildOrchestrator':
        data_dir = Path(data_dir)
        hardener = PermissionHardener(
            permission_adapter or create_permission_adapter(config.hardening.adapter),
            build_principal=config.hardening.build_principal,
            admin_principal=config.hardening.admin_principal,
        )
        return cls(
            config=config,
            history=BuildHistory(data_dir),
            workspace_manager=WorkspaceManager(data_dir),
            checkout=checkout or SCMHandler(config.repository.url, config.branch),
            broker=CredentialBroker(secret_store or create_secret_store(config.secret_store)),
            hardener=hardener,
            transfer_agent=transfer_agent or TransferAgent(
                connect_timeout=config.transfer.connect_timeout,
                retries=config.transfer.retries,
                backoff_seconds=config.transfer.backoff_seconds,
            ),
            cleanup_handler=CleanupHandler(),
            notifier=notifier or Notifier(config.notify.webhooks),
            logs_dir=data_dir / "build_logs",
            keep_workspaces=keep_workspaces,
        )

    # --- Control surface ---

    def enqueue(self, revision: str, repository_id: Optional[str] = None, ref: Optional[str] = None,
                triggered_by: str = "webhook", start: bool = True) -> Build:
        build = Build.new(revision, repository_id=repository_id, ref=ref, triggered_by=triggered_by)
        with self.lock:
            self.builds[build.id] = build
        self.history.save(build)
        self.logger.info(f"Queued build {build.id} for revision {revision} (trigger: {triggered_by})")
        if start:
            self.start(build.id)
        return build

    def start(self, build_id: str) -> Future:
        with self.lock:
            if build_id not in self.builds:
                if self.history.get(build_id) is not None:
                    raise ValueError(f"Build {build_id} has already finished; only queued builds can be started")
                raise KeyError(build_id)
            if build_id in self.futures:
                return self.futures[build_id]
            if self.builds[build_id].status != BuildStatus.QUEUED:
                raise ValueError(f"Build {build_id} is {self.builds[build_id].status.value}; only queued builds can be started")
            future = self.worker_pool.submit(self.run_build, build_id)
            self.futures[build_id] = future
        future.add_done_callback(lambda f: self._on_worker_done(build_id, f))
        return future

    def abort(self, build_id: str, reason: str = "Aborted by request") -> bool:
        """Asks a queued or running build to stop. Cleanup still runs."""
        with self.lock:
            build = self.builds.get(build_id)
            if build is None or build.is_terminal:
                return False
            context = self.contexts.get(build_id)
            if context is not None:
                context.request_abort(reason)
            else:
                self._pending_aborts[build_id] = reason
        self.logger.warning(f"Abort requested for build {build_id}: {reason}")
        return True

    def status(self, build_id: str) -> Optional[Stage]:
        build = self.get_build(build_id)
        return build.current_stage() if build else None

    def get_build(self, build_id: str) -> Optional[Build]:
        with self.lock:
            build = self.builds.get(build_id)
        return build or self.history.get(build_id)

    def active_build_for_revision(self, revision: str) -> Optional[Build]:
        with self.lock:
            for build in self.builds.values():
                if build.revision == revision and build.status in (BuildStatus.QUEUED, BuildStatus.RUNNING):
                    return build
        return None

    def list_builds(self, limit: int = 20) -> List[dict]:
        return self.history.list(limit=limit)

    def shutdown(self, wait: bool = True):
        """Stops the worker. Without `wait`, builds still queued are cancelled and recorded as aborted."""
        self.logger.info(f"Shutting down build worker (wait={wait})...")
        with self.lock:
            pending = dict(self.futures)
        self.worker_pool.shutdown(wait=wait, cancel_futures=not wait)
        for build_id, future in pending.items():
            if future.cancelled():
                self._abandon(build_id, "Server shut down before the build started")

    def _abandon(self, build_id: str, reason: str):
        with self.lock:
            build = self.builds.get(build_id)
        if build is None or build.is_terminal:
            return
        for stage in build.stage_log:
            stage.state = StageState.SKIPPED
            stage.message = reason
        build.status = BuildStatus.FAILED
        build.error_kind = BuildAborted.kind
        build.error_message = reason
        build.exit_code = BuildAborted.exit_code
        build.finished_at = utc_now()
        self.history.save(build)
        self.logger.warning(f"Build {build_id} for revision {build.revision} abandoned: {reason}")
        self.notifier.notify(build)
        with self.lock:
            self.builds.pop(build_id, None)

    # --- Pipeline ---

    def run_build(self, build_id: str) -> Build:
        with self.lock:
            build = self.builds[build_id]
        build_logger, log_path = get_build_logger(build.id, self.logs_dir)
        workspace = self.workspace_manager.workspace_path(build.id)
        context = BuildContext(
            build_id=build.id,
            revision=build.revision,
            workspace_root=workspace,
            source_dir=workspace / SOURCE_DIR_NAME,
            target=self.config.target,
        )
        with self.lock:
            self.contexts[build.id] = context
            pending_abort = self._pending_aborts.pop(build.id, None)
        if pending_abort:
            context.request_abort(pending_abort)

        build.status = BuildStatus.RUNNING
        build.started_at = utc_now()
        self.history.save(build)
        build_logger.info(f"Build {build.id} started for revision {build.revision}; log: {log_path}")

        stages: List[Tuple[StageName, Callable]] = [
            (StageName.CHECKOUT, self._checkout),
            (StageName.CREDENTIAL_ACQUIRE, self._acquire_credential),
            (StageName.HARDEN, self._harden),
            (StageName.TRANSFER, self._transfer),
        ]
        failure: Optional[PipelineError] = None
        try:
            for name, action in stages:
                if failure is None and context.aborted:
                    failure = BuildAborted(context.abort_reason or "Aborted")
                if failure is not None:
                    self._skip(build, name, failure, build_logger)
                    continue
                failure = self._run_stage(build, context, name, action, build_logger)
        finally:
            self._run_cleanup(build, context, build_logger)
            self._finish(build, context, failure, build_logger)
        return build

    def _run_stage(self, build: Build, context: BuildContext, name: StageName, action: Callable,
                   build_logger) -> Optional[PipelineError]:
        stage = build.stage(name)
        stage.state = StageState.RUNNING
        stage.started_at = utc_now()
        self.history.save(build)
        build_logger.info(f"[{name.value}] started")

        watchdog = self._start_watchdog(context, name)
        try:
            stage.message = action(build, context, stage)
            stage.state = StageState.SUCCEEDED
            build_logger.info(f"[{name.value}] succeeded{': ' + stage.message if stage.message else ''}")
            for warning in stage.warnings:
                build_logger.warning(f"[{name.value}] {warning}")
            return None
        except PipelineError as e:
            stage.error_kind = e.kind
            stage.message = e.message
            if not e.fatal:
                stage.state = StageState.SUCCEEDED
                stage.warnings = stage.warnings or [e.message]
                build_logger.warning(f"[{name.value}] completed with {e.kind}: {e.message}")
                for warning in stage.warnings:
                    build_logger.warning(f"[{name.value}] {warning}")
                return None
            stage.state = StageState.FAILED
            build_logger.error(f"[{name.value}] failed with {e.kind}: {e.message}")
            return e
        except Exception as e:
            stage.state = StageState.FAILED
            stage.error_kind = InternalError.kind
            stage.message = f"{type(e).__name__}: {e}"
            build_logger.error(f"[{name.value}] failed unexpectedly: {stage.message}", exc_info=True)
            return InternalError(stage.message)
        finally:
            if watchdog is not None:
                watchdog.cancel()
            stage.finished_at = utc_now()
            self.history.save(build)

    def _start_watchdog(self, context: BuildContext, name: StageName) -> Optional[threading.Timer]:
        timeout = self.config.stage_timeout_seconds
        if not timeout:
            return None
        watchdog = threading.Timer(
            timeout, context.request_abort, args=(f"StageTimeout: {name.value} exceeded {timeout:g}s",))
        watchdog.daemon = True
        watchdog.start()
        return watchdog

    def _skip(self, build: Build, name: StageName, failure: PipelineError, build_logger):
        stage = build.stage(name)
        stage.state = StageState.SKIPPED
        stage.message = f"Skipped after {failure.kind}"
        build_logger.info(f"[{name.value}] skipped")

    def _checkout(self, build: Build, context: BuildContext, stage: Stage) -> str:
        try:
            self.workspace_manager.create_workspace(build.id)
        except OSError as e:
            raise CheckoutFailed(f"Could not create workspace {context.workspace_root}: {e}")
        commit = self.checkout.checkout(context.source_dir, build.revision)
        return f"Checked out {commit}"

    def _acquire_credential(self, build: Build, context: BuildContext, stage: Stage) -> str:
        credential = self.broker.materialize(self.config.credential_id, context)
        return f"Materialized credential '{credential.credential_id}'"

    def _harden(self, build: Build, context: BuildContext, stage: Stage) -> str:
        report = self.hardener.harden(context.credential_path)
        build.hardening_report = report.to_dict()
        stage.warnings = report.warnings
        if report.ok:
            return "All hardening steps applied"
        fatal_steps = [op for op in report.failed_operations if op in self.config.hardening.fatal_steps]
        if fatal_steps:
            raise CredentialHardenFailed(f"Required hardening steps failed: {', '.join(fatal_steps)}", fatal=True)
        raise CredentialHardenFailed(
            f"Completed with {len(report.failed_operations)} failed step(s): {', '.join(report.failed_operations)}")

    def _transfer(self, build: Build, context: BuildContext, stage: Stage) -> str:
        result = self.transfer_agent.transfer(
            context.source_dir, context.credential_path, context.target,
            abort_event=context.abort_event, build_id=build.id,
        )
        build.transfer_result = result.to_dict()
        return f"Copied {result.files_copied} files to {result.host}:{result.remote_path}"

    def _run_cleanup(self, build: Build, context: BuildContext, build_logger):
        stage = build.stage(StageName.CLEANUP)
        stage.state = StageState.RUNNING
        stage.started_at = utc_now()
        build_logger.info(f"[{StageName.CLEANUP.value}] started")
        try:
            self.cleanup_handler.cleanup(context.credential_path)
            stage.state = StageState.SUCCEEDED
            build_logger.info(f"[{StageName.CLEANUP.value}] succeeded")
        except CleanupFailed as e:
            stage.state = StageState.FAILED
            stage.error_kind = e.kind
            stage.message = e.message
            build_logger.error(f"[{StageName.CLEANUP.value}] {e.kind}: {e.message} (build result unchanged)")
        except Exception as e:
            stage.state = StageState.FAILED
            stage.error_kind = CleanupFailed.kind
            stage.message = f"{type(e).__name__}: {e}"
            build_logger.error(f"[{StageName.CLEANUP.value}] failed unexpectedly: {stage.message}", exc_info=True)
        finally:
            stage.finished_at = utc_now()
            context.credential_path = None

    def _finish(self, build: Build, context: BuildContext, failure: Optional[PipelineError], build_logger):
        if not self.keep_workspaces and context.workspace_root.exists():
            self.workspace_manager.cleanup_workspace(context.workspace_root)

        if failure is None:
            build.status = BuildStatus.SUCCEEDED
            build.exit_code = EXIT_SUCCESS
        else:
            build.status = BuildStatus.FAILED
            build.error_kind = failure.kind
            build.error_message = failure.message
            build.exit_code = failure.exit_code
        build.finished_at = utc_now()
        self.history.save(build)
        build_logger.info(f"Build {build.id} finished with status: {build.status.value}")
        close_build_logger(build_logger)

        with self.lock:
            self.contexts.pop(build.id, None)
        if build.status == BuildStatus.SUCCEEDED:
            self.logger.info(f"Build {build.id} for revision {build.revision} succeeded.")
        else:
            self.logger.error(f"Build {build.id} for revision {build.revision} failed: {build.error_kind}: {build.error_message}")
        self.notifier.notify(build)
        with self.lock:
            self.builds.pop(build.id, None)

    def _on_worker_done(self, build_id: str, future: Future):
        with self.lock:
            self.futures.pop(build_id, None)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error(f"Build task for ID {build_id} raised an unhandled exception: {exc}", exc_info=exc)
