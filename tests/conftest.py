import json
from datetime import datetime, timezone

import pytest

from services.common.clock import FrozenClock
from services.version_registry.models import TrackedTool
from services.version_registry.repository import SnapshotStore


FIXED_TIME = datetime(2026, 1, 28, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(FIXED_TIME)


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def store(data_dir):
    return SnapshotStore(data_dir)


@pytest.fixture
def tools():
    return [
        TrackedTool(id="node", name="Node.js"),
        TrackedTool(id="python", name="Python"),
        TrackedTool(id="git", name="Git"),
    ]


@pytest.fixture
def write_json():
    def _write(path, payload):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write
