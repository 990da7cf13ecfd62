"""
Job registry.

Maps job identifiers to job classes so a platform can build a fresh job
instance for every unit it runs. Jobs register at import time with the
``register_job`` decorator; registering the same identifier twice fails.
"""

import importlib
import logging
from typing import Callable, Dict, Iterable, List, Type, TypeVar

from .errors import JobNotRegistered

logger = logging.getLogger(__name__)

J = TypeVar("J", bound=type)


class JobRegistry:
    """Identifier -> job class."""

    def __init__(self):
        self._jobs: Dict[str, Type] = {}

    def register(self, identifier: str = None) -> Callable[[J], J]:
        """Class decorator. Defaults to the class's ``job_identifier`` or name."""

        def decorator(cls: J) -> J:
            name = identifier or getattr(cls, "job_identifier", None) or cls.__name__
            if name in self._jobs and self._jobs[name] is not cls:
                raise ValueError(f"Job already registered: {name}")
            if getattr(cls, "job_identifier", None) is None:
                cls.job_identifier = name
            self._jobs[name] = cls
            logger.debug("Registered job %s -> %s", name, cls.__qualname__)
            return cls

        return decorator

    def create(self, identifier: str):
        """Build a new job instance."""
        try:
            cls = self._jobs[identifier]
        except KeyError:
            raise JobNotRegistered(identifier) from None
        return cls()

    def is_registered(self, identifier: str) -> bool:
        return identifier in self._jobs

    def identifiers(self) -> List[str]:
        return sorted(self._jobs)

    def unregister(self, identifier: str) -> None:
        self._jobs.pop(identifier, None)


registry = JobRegistry()


def register_job(identifier: str = None):
    """Register a job class on the default registry."""
    return registry.register(identifier)


def load_job_modules(modules: Iterable[str]) -> None:
    """Import modules whose job classes register themselves."""
    for module in modules:
        importlib.import_module(module)
        logger.debug("Loaded job module %s", module)
