"""Lazy-loading package exports for FastAPI routers."""

from __future__ import annotations

from importlib import import_module
from typing import Dict

_ROUTER_MODULES = [
    "admin_billing",
    "billing_refunds",
    "billing_webhook",
    "health",
]

__all__ = list(_ROUTER_MODULES)

_lazy_cache: Dict[str, object] = {}


def __getattr__(name: str) -> object:
    if name in _lazy_cache:
        return _lazy_cache[name]
    if name in _ROUTER_MODULES:
        module = import_module(f".{name}", __name__)
        _lazy_cache[name] = module
        return module
    raise AttributeError(name)
