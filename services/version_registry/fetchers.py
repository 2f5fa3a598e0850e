from __future__ import annotations

import importlib
from typing import Any, Callable, Dict, Optional, Protocol

from services.version_registry.errors import ConfigError
from services.version_registry.models import FetchResult


class FetcherAdapter(Protocol):
    def fetch(self, tool_id: str) -> FetchResult:
        ...


class DisabledFetcher:
    def __init__(self, *, reason: str = "fetcher_not_configured") -> None:
        self._reason = reason

    def fetch(self, tool_id: str) -> FetchResult:
        return FetchResult.failure(self._reason)


class FetcherRegistry:
    """Dispatches each tool id to its own version lookup callable.

    Callables may return a ``FetchResult`` or a bare version string.
    """

    def __init__(self, fetchers: Optional[Dict[str, Callable[[], Any]]] = None) -> None:
        self._fetchers: Dict[str, Callable[[], Any]] = dict(fetchers or {})

    def register(self, tool_id: str, fetcher: Callable[[], Any]) -> None:
        self._fetchers[tool_id] = fetcher

    def tool_ids(self) -> list:
        return list(self._fetchers)

    def fetch(self, tool_id: str) -> FetchResult:
        fetcher = self._fetchers.get(tool_id)
        if fetcher is None:
            return FetchResult.failure(f"no fetcher registered for {tool_id}")
        return coerce_fetch_result(fetcher())


def coerce_fetch_result(value: Any) -> FetchResult:
    if isinstance(value, FetchResult):
        return value
    if isinstance(value, str) and value.strip():
        return FetchResult.success(value.strip())
    if isinstance(value, dict):
        if value.get("error"):
            return FetchResult.failure(str(value["error"]))
        version = value.get("version")
        if isinstance(version, str) and version.strip():
            return FetchResult.success(version.strip())
    return FetchResult.failure(f"malformed fetch result: {value!r}")


def import_object(path: str) -> Any:
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigError(f"Import path must look like 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import {module_name!r}: {exc}") from exc
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigError(f"{module_name!r} has no attribute {attribute!r}") from exc


def load_fetcher(path: str) -> FetcherAdapter:
    """Build a fetcher from a ``module:factory`` path.

    Classes and factories are called with no arguments; an object that
    already exposes ``fetch`` is used as is.
    """
    target = import_object(path)
    if isinstance(target, type) or not hasattr(target, "fetch"):
        if not callable(target):
            raise ConfigError(f"{path!r} is neither a fetcher nor a callable factory")
        fetcher = target()
    else:
        fetcher = target
    if not hasattr(fetcher, "fetch"):
        raise ConfigError(f"{path!r} did not produce an object with a fetch() method")
    return fetcher
