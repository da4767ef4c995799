from pathlib import Path

from pydeployer_engine.config import PipelineConfig
from pydeployer_engine.logger_setup import DATA_DIR, logger
from pydeployer_engine.orchestrator import BuildOrchestrator
from pydeployer_engine.trigger_listener import TriggerListener


def run_server(config: PipelineConfig, data_dir: Path = DATA_DIR, host: str = "0.0.0.0", port: int = 5000,
               keep_workspaces: bool = False):
    orchestrator = BuildOrchestrator.from_config(config, data_dir, keep_workspaces=keep_workspaces)
    listener = TriggerListener(orchestrator, config.branch, config.repository.id)

    if not config.target.verify_host_key:
        logger.warning(f"Pipeline '{config.name}' is configured to trust unknown host keys for {config.target.host}.")

    from web_ui.app import create_app
    flask_app = create_app(listener, orchestrator)
    logger.info(f"Pipeline '{config.name}' deploying branch '{config.branch}' to "
                f"{config.target.host}:{config.target.remote_path}")
    logger.info(f"Listening for push notifications on http://{host}:{port}/webhook")
    try:
        # Reloader off: it would start a second worker thread.
        flask_app.run(debug=False, use_reloader=False, host=host, port=port)
    except KeyboardInterrupt:
        logger.info("PyDeployer shutting down...")
    finally:
        logger.info("Stopping the build worker; queued builds are recorded as aborted...")
        orchestrator.shutdown(wait=False)
        logger.info("Shutdown complete.")


if __name__ == "__main__":
    logger.info("Starting PyDeployer...")
    run_server(PipelineConfig.load())
