import json
from pathlib import Path

import click

from pydeployer_engine.config import HardeningConfig, PipelineConfig
from pydeployer_engine.errors import EXIT_INTERNAL_ERROR, CheckoutFailed, ConfigError, TriggerRejected
from pydeployer_engine.hardener import PermissionHardener
from pydeployer_engine.logger_setup import DATA_DIR, logger
from pydeployer_engine.models import PushNotification
from pydeployer_engine.orchestrator import BuildOrchestrator
from pydeployer_engine.permissions import create_permission_adapter
from pydeployer_engine.trigger_listener import TriggerListener

EXIT_TRIGGER_REJECTED = 3


def _load_config(ctx) -> PipelineConfig:
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = PipelineConfig.load(ctx.obj["config_path"])
        except ConfigError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(EXIT_INTERNAL_ERROR)
    return ctx.obj["config"]


def _orchestrator(ctx) -> BuildOrchestrator:
    if "orchestrator" not in ctx.obj:
        ctx.obj["orchestrator"] = BuildOrchestrator.from_config(
            _load_config(ctx), ctx.obj["data_dir"], keep_workspaces=ctx.obj["keep_workspaces"])
    return ctx.obj["orchestrator"]


def _print_stage_log(build):
    for stage in build.stage_log:
        line = f"  {stage.name.value:<18} {stage.state.value:<10}"
        if stage.error_kind:
            line += f" [{stage.error_kind}]"
        if stage.message:
            line += f" {stage.message}"
        click.echo(line)
        for warning in stage.warnings:
            click.echo(f"  {'':<18} warning: {warning}")


def _report_and_exit(ctx, build):
    click.echo(f"Build {build.id} (revision {build.revision}) finished: {build.status.value}")
    _print_stage_log(build)
    ctx.exit(build.exit_code if build.exit_code is not None else EXIT_INTERNAL_ERROR)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Pipeline config file (default: $PYDEPLOYER_CONFIG or ./pipeline.yaml).")
@click.option("--data-dir", type=click.Path(path_type=Path), default=DATA_DIR, show_default=True,
              help="Directory for build history, workspaces and logs.")
@click.option("--keep-workspaces", is_flag=True, help="Do not delete build workspaces after a build.")
@click.pass_context
def cli(ctx, config_path, data_dir, keep_workspaces):
    """PyDeployer: push-triggered deployments with per-build credentials."""
    ctx.ensure_object(dict)
    ctx.obj.update({"config_path": config_path, "data_dir": data_dir, "keep_workspaces": keep_workspaces})


@cli.command("run")
@click.option("--revision", "-r", default=None, help="Revision to deploy (default: head of the configured branch).")
@click.pass_context
def run_build(ctx, revision):
    """Runs one build synchronously and exits with its result code."""
    config = _load_config(ctx)
    orchestrator = _orchestrator(ctx)
    if not revision:
        revision = orchestrator.checkout.get_latest_commit_hash()
        if not revision:
            click.echo(f"Error: could not resolve head of branch '{config.branch}'.", err=True)
            ctx.exit(CheckoutFailed.exit_code)
    click.echo(f"Deploying revision {revision} to {config.target.host}:{config.target.remote_path}...")
    build = orchestrator.enqueue(revision, ref=config.branch, triggered_by="cli", start=False)
    build = orchestrator.run_build(build.id)
    _report_and_exit(ctx, build)


@cli.command("trigger")
@click.argument("revision")
@click.option("--ref", required=True, help="Pushed ref, e.g. refs/heads/main.")
@click.option("--repository", "repository_id", default=None, help="Repository id of the push.")
@click.pass_context
def trigger(ctx, revision, ref, repository_id):
    """Feeds a push notification through the trigger listener and waits for the build."""
    config = _load_config(ctx)
    orchestrator = _orchestrator(ctx)
    listener = TriggerListener(orchestrator, config.branch, config.repository.id)
    notification = PushNotification(repository_id=repository_id or config.repository.id or "", revision=revision, ref=ref)
    try:
        build, _created = listener.receive(notification, triggered_by="cli")
    except TriggerRejected as e:
        click.echo(f"{e.kind}: {e.message}", err=True)
        ctx.exit(EXIT_TRIGGER_REJECTED)
    click.echo(f"Build {build.id} queued for revision {revision}.")
    orchestrator.shutdown(wait=True)
    _report_and_exit(ctx, orchestrator.get_build(build.id))


@cli.command("status")
@click.argument("build_id")
@click.pass_context
def build_status(ctx, build_id):
    """Shows the status and current stage of a build."""
    build = _orchestrator(ctx).get_build(build_id)
    if not build:
        click.echo(f"Build with ID '{build_id}' not found.")
        ctx.exit(1)
    click.echo(json.dumps({"status": build.status.value, "stage": build.current_stage().to_dict()}, indent=2))
    _print_stage_log(build)


@cli.command("history")
@click.option("--limit", default=10, type=int, help="Number of recent builds to show.")
@click.pass_context
def history(ctx, limit):
    """Lists recent builds."""
    builds = _orchestrator(ctx).list_builds(limit=limit)
    if not builds:
        click.echo("No builds recorded.")
        return
    for b in builds:
        started = (b.get('started_at') or 'N/A').split('.')[0].replace('T', ' ')
        click.echo(f"  - {b['id']} | {b['revision'][:12]} | {b['status']:<9} | Started: {started} | "
                   f"Trigger: {b.get('triggered_by', 'N/A')}")


@cli.command("harden")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--build-principal", default=None, help="Principal granted read access.")
@click.option("--admin-principal", default=None, help="Principal granted full access.")
@click.option("--adapter", type=click.Choice(["auto", "posix", "windows"]), default="auto")
@click.pass_context
def harden(ctx, path, build_principal, admin_principal, adapter):
    """Applies credential hardening to a single file and prints the report."""
    defaults = HardeningConfig()
    hardener = PermissionHardener(
        create_permission_adapter(adapter),
        build_principal=build_principal or defaults.build_principal,
        admin_principal=admin_principal or defaults.admin_principal,
    )
    report = hardener.harden(path)
    for step in report.steps:
        principal = f" ({step.principal})" if step.principal else ""
        outcome = "ok" if step.ok else f"FAILED: {step.error}"
        click.echo(f"  {step.operation}{principal}: {outcome}")
    ctx.exit(0 if report.ok else 1)


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=5000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Starts the webhook endpoint and the build worker."""
    from main_server import run_server
    run_server(_load_config(ctx), ctx.obj["data_dir"], host=host, port=port,
               keep_workspaces=ctx.obj["keep_workspaces"])


if __name__ == '__main__':
    logger.debug("Starting PyDeployer CLI")
    cli()
