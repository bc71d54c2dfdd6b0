"""Observed-State Reader — fetches the Deployment a Blocky currently owns."""

import logging
from typing import Optional

from blocky_controller.models.deployment import Deployment
from blocky_controller.models.meta import ObjectKey, ResourceKind
from blocky_controller.store.base import Store

logger = logging.getLogger(__name__)


class ObservedStateReader:
    """
    Read-only view of managed Deployments.
    Returns None when nothing exists yet; only TransientFetchError escapes.
    """

    def __init__(self, store: Store):
        self.store = store

    def read(self, key: ObjectKey, timeout: Optional[float] = None) -> Optional[Deployment]:
        observed = self.store.get(ResourceKind.DEPLOYMENT, key, timeout=timeout)
        if observed is None:
            logger.debug("No Deployment observed for %s", key)
        return observed
