import logging
import os
import coloredlogs
from pathlib import Path

DATA_DIR = Path(os.environ.get("PYDEPLOYER_DATA_DIR", Path(__file__).resolve().parent.parent / "data"))
LOGS_DIR = DATA_DIR / "build_logs"

def setup_global_logger():
    logger = logging.getLogger("pydeployer")
    logger.setLevel(logging.DEBUG)

    # coloredlogs installs its own console handler on 'logger'.
    level = os.environ.get("PYDEPLOYER_LOG_LEVEL", "DEBUG")
    coloredlogs.install(level=level, logger=logger, fmt='%(asctime)s %(name)s %(levelname)s %(message)s')
    return logger

def get_build_logger(build_id: str, logs_dir: Path = None):
    """Creates a file-backed logger for a single build.

    The returned logger does not propagate to the global one, so a build's
    stage trace lands only in its own log file. Call `close_build_logger`
    when the build is done.
    """
    build_log_dir = (logs_dir or LOGS_DIR) / build_id
    build_log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = build_log_dir / "build.log"

    logger = logging.getLogger(f"pydeployer.build.{build_id}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_file_path) for h in logger.handlers):
        fh = logging.FileHandler(log_file_path)
        fh.setLevel(logging.DEBUG)
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger, log_file_path

def close_build_logger(build_logger: logging.Logger):
    for handler in list(build_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            handler.close()
            build_logger.removeHandler(handler)

# Initialize global logger
logger = setup_global_logger()
