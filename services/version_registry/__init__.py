from services.version_registry.app import create_app
from services.version_registry.config import VersionApiConfig, build_version_registry, load_version_api_config
from services.version_registry.fetchers import DisabledFetcher, FetcherRegistry
from services.version_registry.models import (
    FetchResult,
    SnapshotStatus,
    ToolVersionRecord,
    TrackedTool,
    UpdateInfo,
    VersionSnapshot,
)
from services.version_registry.repository import SnapshotStore
from services.version_registry.service import QueryService
from services.version_registry.updater import VersionUpdater

__all__ = [
    "DisabledFetcher",
    "FetchResult",
    "FetcherRegistry",
    "QueryService",
    "SnapshotStatus",
    "SnapshotStore",
    "ToolVersionRecord",
    "TrackedTool",
    "UpdateInfo",
    "VersionApiConfig",
    "VersionSnapshot",
    "VersionUpdater",
    "build_version_registry",
    "create_app",
    "load_version_api_config",
]
