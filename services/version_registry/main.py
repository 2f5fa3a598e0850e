import logging
from typing import Optional

import uvicorn
from dotenv import load_dotenv

from services.common.logger import configure_logging
from services.version_registry.app import API_PREFIX, create_app
from services.version_registry.config import (
    VersionApiConfig,
    build_version_registry,
    load_version_api_config,
)
from services.version_registry.models import SnapshotStatus

logger = logging.getLogger(__name__)


def _load_config(config: Optional[VersionApiConfig]) -> VersionApiConfig:
    load_dotenv()
    cfg = config or load_version_api_config()
    configure_logging(cfg.log_level)
    return cfg


def run(config: Optional[VersionApiConfig] = None) -> None:
    cfg = _load_config(config)
    app = create_app(cfg)
    logger.info(f"Version API listening on {cfg.host}:{cfg.port}")
    logger.info(f"Data directory: {cfg.data_dir}")
    logger.info(f"Health check: http://{cfg.host}:{cfg.port}{API_PREFIX}/health")
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_config=None)


def refresh_once(config: Optional[VersionApiConfig] = None) -> int:
    """Run a single refresh cycle against the data directory and exit.

    Lets a separate process (cron, CI job) act as the writer while the API
    runs with the scheduler disabled.
    """
    cfg = _load_config(config)
    registry = build_version_registry(cfg)
    registry.store.ensure_directory()
    result = registry.updater.run_cycle()
    return 1 if result.status == SnapshotStatus.error else 0


if __name__ == "__main__":
    run()
