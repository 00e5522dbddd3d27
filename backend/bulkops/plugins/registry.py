from __future__ import annotations

import importlib
import pkgutil
from typing import Union

from bulkops.plugins.base import NotificationPlugin, RowProcessorPlugin

PluginBase = Union[RowProcessorPlugin, NotificationPlugin]

_registry: dict[str, dict[str, PluginBase]] = {
    "processor": {},
    "notification": {},
}


def register(plugin_type: str, plugin: PluginBase) -> None:
    if plugin_type not in _registry:
        raise ValueError(f"Unknown plugin type: {plugin_type}")
    _registry[plugin_type][plugin.name] = plugin


def get(plugin_type: str, name: str) -> PluginBase | None:
    return _registry.get(plugin_type, {}).get(name)


def get_all(plugin_type: str) -> dict[str, PluginBase]:
    return _registry.get(plugin_type, {})


def discover() -> None:
    """Auto-discover and register plugins from bulkops.plugins subpackages."""
    import bulkops.plugins.notifiers as notifiers_pkg
    import bulkops.plugins.processors as processors_pkg

    for package, dotted in (
        (processors_pkg, "bulkops.plugins.processors"),
        (notifiers_pkg, "bulkops.plugins.notifiers"),
    ):
        for _importer, modname, _ispkg in pkgutil.iter_modules(package.__path__):
            module = importlib.import_module(f"{dotted}.{modname}")
            if hasattr(module, "register_plugin"):
                module.register_plugin()


def ensure_discovered() -> None:
    if not _registry["processor"]:
        discover()
