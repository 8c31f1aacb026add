"""Removal of a node's PCI devices and claims when the node is deleted."""

from __future__ import annotations

import logging
from typing import Optional

from .api import NODE_KEY_NAME
from .clients import CoreNode, ObjectStore

log = logging.getLogger(__name__)

WRANGLER_FINALIZER = "wrangler.cattle.io/PCIDeviceClaimOnRemove"


def contains_finalizer(finalizers: list[str], finalizer: str) -> bool:
    return finalizer in finalizers


def remove_finalizer(finalizers: list[str], finalizer: str) -> list[str]:
    """Return ``finalizers`` without the first occurrence of ``finalizer``."""
    result = list(finalizers)
    if finalizer in result:
        result.remove(finalizer)
    return result


class NodeCleanupHandler:
    """Deletes the claims and devices belonging to a node being removed."""

    def __init__(self, pdc_client: ObjectStore, pd_client: ObjectStore) -> None:
        self.pdc_client = pdc_client
        self.pd_client = pd_client

    def on_remove(self, name: str, node: Optional[CoreNode]) -> Optional[CoreNode]:
        if node is None or node.metadata.deletion_timestamp is None:
            return node
        log.debug("cleaning pcidevices for node %s", node.name)

        for pdc in self.pdc_client.list():
            if pdc.spec.node_name != node.name:
                continue
            if contains_finalizer(pdc.metadata.finalizers, WRANGLER_FINALIZER):
                pdc.metadata.finalizers = remove_finalizer(pdc.metadata.finalizers, WRANGLER_FINALIZER)
                self.pdc_client.update(pdc)
            self.pdc_client.delete(pdc.name)

        for pd in self.pd_client.list({NODE_KEY_NAME: node.name}):
            self.pd_client.delete(pd.name)

        return node