"""Task loading — resolve a TaskConfig to a ready-to-run MonitoredTask.

Three kinds of module reference are accepted, checked in this order:

1. an identifier registered on a ``TaskRegistry`` (static registration);
2. a path ending in ``.py``, executed fresh from disk on every load;
3. a dotted module name, imported and reloaded on every load.

The loaded module's task class is its ``Task`` attribute when present,
otherwise the single ``MonitoredTask`` subclass defined in the module.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from scheduledtasks.errors import ModuleContractError
from scheduledtasks.scheduler.task import MonitoredTask
from scheduledtasks.timezones import format_js_iso, parse_iso, to_fixed_zone_wall_clock

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import ModuleType

    from scheduledtasks.scheduler.models import TaskConfig
    from scheduledtasks.scheduler.store import RunStore

logger = logging.getLogger(__name__)

LAST_CHANGED_PARAM = "lastChanged"
LAST_CHANGED_MARGIN = timedelta(minutes=10)
DEFAULT_LAST_CHANGED = datetime(2000, 1, 1, tzinfo=UTC)

TaskFactory = type[MonitoredTask]


class TaskRegistry:
    """Registry mapping module identifiers to MonitoredTask classes.

    Usage::

        registry = TaskRegistry()

        @registry.task("orders.sync")
        class SyncOrders(MonitoredTask):
            ...
    """

    def __init__(self) -> None:
        self._factories: dict[str, TaskFactory] = {}

    def task(self, identifier: str) -> Callable[[TaskFactory], TaskFactory]:
        """Decorator to register a MonitoredTask subclass under *identifier*."""

        def decorator(cls: TaskFactory) -> TaskFactory:
            self.register(identifier, cls)
            return cls

        return decorator

    def register(self, identifier: str, cls: TaskFactory) -> None:
        if not _is_task_class(cls):
            msg = f"{cls!r} registered as '{identifier}' must subclass MonitoredTask"
            raise ModuleContractError(msg)
        self._factories[identifier] = cls
        logger.debug("Registered task class: %s -> %s", identifier, cls.__qualname__)

    def get(self, identifier: str) -> TaskFactory | None:
        return self._factories.get(identifier)

    @property
    def identifiers(self) -> list[str]:
        return list(self._factories)


task_registry = TaskRegistry()


@dataclass
class LoadedTask:
    """A freshly constructed task plus the parameters it was given."""

    task: MonitoredTask
    params: dict[str, Any]


def _is_task_class(obj: object) -> bool:
    return (
        inspect.isclass(obj)
        and issubclass(obj, MonitoredTask)
        and obj is not MonitoredTask
        and not inspect.isabstract(obj)
    )


class TaskLoader:
    """Builds MonitoredTask instances for task configs.

    Args:
        store: RunStore used to look up the last completed run.
        registry: TaskRegistry consulted before any import (default: the
            module-level ``task_registry``).
        timezone: Zone for ``lastChanged`` conversion (default from settings).
        base_dir: Directory relative ``.py`` paths are resolved against
            (default: the current working directory).
    """

    def __init__(
        self,
        store: RunStore,
        registry: TaskRegistry | None = None,
        timezone: str | None = None,
        base_dir: Path | None = None,
    ) -> None:
        self._store = store
        self._registry = registry if registry is not None else task_registry
        self._timezone = timezone
        self._base_dir = base_dir

    async def load(
        self, config: TaskConfig, task_id: str, task_group_run_id: str
    ) -> LoadedTask:
        """Compute parameters, resolve the task class, and instantiate it."""
        params = await self.compute_params(config)
        cls = self.resolve(config.module_path)
        logger.info(
            "Creating task '%s' from %s (run %s, group run %s)",
            config.name,
            config.module_path,
            task_id,
            task_group_run_id,
        )
        try:
            task = cls(config.name, task_id, params)
        except Exception as exc:
            msg = f"Task {config.name} ({config.module_path}) could not be constructed: {exc}"
            raise ModuleContractError(msg) from exc
        return LoadedTask(task=task, params=params)

    # -- Parameters ------------------------------------------------------------

    async def compute_params(self, config: TaskConfig) -> dict[str, Any]:
        """Copy the configured params and fill in ``lastChanged`` if absent."""
        params = dict(config.params)
        if params.get(LAST_CHANGED_PARAM):
            return params

        last_run = await self._store.get_last_completed_run(config.name)
        if last_run is not None and last_run.start_time:
            since = parse_iso(last_run.start_time) - LAST_CHANGED_MARGIN
            params[LAST_CHANGED_PARAM] = format_js_iso(
                to_fixed_zone_wall_clock(since, self._timezone)
            )
            logger.info("Calculated lastChanged for %s: %s", config.name, params[LAST_CHANGED_PARAM])
        else:
            params[LAST_CHANGED_PARAM] = format_js_iso(
                to_fixed_zone_wall_clock(DEFAULT_LAST_CHANGED, self._timezone)
            )
            logger.info(
                "Using default lastChanged for %s: %s", config.name, params[LAST_CHANGED_PARAM]
            )
        return params

    # -- Module resolution -----------------------------------------------------

    def resolve(self, module_path: str) -> TaskFactory:
        """Return the task class for *module_path*, loading it fresh."""
        registered = self._registry.get(module_path)
        if registered is not None:
            return registered

        if module_path.endswith(".py"):
            module = self._load_file(module_path)
        else:
            module = self._import_fresh(module_path)
        return self._task_class(module, module_path)

    def _load_file(self, module_path: str) -> ModuleType:
        path = Path(module_path)
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        path = path.resolve()
        if not path.is_file():
            msg = f"Task file not found: {path}"
            raise ModuleContractError(msg)

        # A unique name per load keeps every execution free of earlier state.
        name = f"_scheduledtask_{path.stem}_{uuid.uuid4().hex}"
        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            msg = f"Cannot load task file: {path}"
            raise ModuleContractError(msg)
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            msg = f"Failed to import task file {path}: {exc}"
            raise ModuleContractError(msg) from exc
        finally:
            sys.modules.pop(name, None)
        return module

    def _import_fresh(self, module_path: str) -> ModuleType:
        try:
            if module_path in sys.modules:
                return importlib.reload(sys.modules[module_path])
            return importlib.import_module(module_path)
        except Exception as exc:
            msg = f"Failed to import task module {module_path}: {exc}"
            raise ModuleContractError(msg) from exc

    @staticmethod
    def _task_class(module: ModuleType, module_path: str) -> TaskFactory:
        explicit = getattr(module, "Task", None)
        if explicit is not None:
            if not _is_task_class(explicit):
                msg = f"{module_path}: 'Task' must be a concrete MonitoredTask subclass"
                raise ModuleContractError(msg)
            return explicit

        candidates = [
            obj
            for obj in vars(module).values()
            if _is_task_class(obj) and obj.__module__ == module.__name__
        ]
        if len(candidates) == 1:
            return candidates[0]
        if not candidates:
            msg = f"{module_path} must define a MonitoredTask subclass"
        else:
            names = ", ".join(sorted(c.__name__ for c in candidates))
            msg = f"{module_path} defines several MonitoredTask subclasses ({names}); export one as 'Task'"
        raise ModuleContractError(msg)
