"""
Outbound restock dialer.

The audio codec, buffer and cache modules have no web or vendor dependencies;
the names below are resolved lazily so importing the package stays cheap.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.dialer.cache import ResponseCache
    from src.dialer.config import Config
    from src.dialer.manager import CallManager
    from src.dialer.orchestrator import StreamOrchestrator
    from src.dialer.session import CallSession

_EXPORTS = {
    "Config": "src.dialer.config",
    "get_config": "src.dialer.config",
    "CallSession": "src.dialer.session",
    "ResponseCache": "src.dialer.cache",
    "StreamOrchestrator": "src.dialer.orchestrator",
    "CallManager": "src.dialer.manager",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(import_module(module), name)
