"""In-memory registry of the networks an orchestrator manages."""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from errors import ConfigurationError
from models import Deployment

logger = logging.getLogger(__name__)


class NetworkRegistry:
    """
    Tracks live deployments by name, plus an optional default network.
    Instances are passed to whoever needs them; there is no module-level one.
    """

    def __init__(self) -> None:
        self._deployments: Dict[str, Deployment] = {}
        self._default: Optional[str] = None
        self._lock = threading.RLock()

    def register(self, deployment: Deployment) -> None:
        with self._lock:
            if deployment.name in self._deployments:
                raise ConfigurationError("Network is already registered", network=deployment.name)
            self._deployments[deployment.name] = deployment
            if self._default is None:
                self._default = deployment.name
        logger.debug("Registered network %s", deployment.name)

    def get(self, name: Optional[str] = None) -> Deployment:
        with self._lock:
            key = name or self._default
            if key is None:
                raise ConfigurationError("No network name given and no default network set")
            try:
                return self._deployments[key]
            except KeyError:
                raise ConfigurationError("Unknown network", network=key) from None

    def find(self, name: str) -> Optional[Deployment]:
        with self._lock:
            return self._deployments.get(name)

    def remove(self, name: str) -> Optional[Deployment]:
        with self._lock:
            deployment = self._deployments.pop(name, None)
            if self._default == name:
                self._default = next(iter(self._deployments), None)
        if deployment is not None:
            logger.debug("Unregistered network %s", name)
        return deployment

    def set_default(self, name: str) -> None:
        with self._lock:
            if name not in self._deployments:
                raise ConfigurationError("Unknown network", network=name)
            self._default = name

    @property
    def default(self) -> Optional[str]:
        return self._default

    def names(self) -> List[str]:
        with self._lock:
            return list(self._deployments)

    def __contains__(self, name: object) -> bool:
        return name in self._deployments

    def __len__(self) -> int:
        return len(self._deployments)
