"""Per-node objects and node labels used for device scheduling."""

from __future__ import annotations

import copy
import os
from typing import Optional

from .api import NODE_ENV_VAR_NAME, NODE_KEY_NAME, NVIDIA_DRIVER_NEEDED_KEY, Node, ObjectMeta
from .clients import NotFoundError, ObjectStore


def setup_node_objects(node_ctl: ObjectStore, node_name: Optional[str] = None) -> None:
    """Create the Node object for ``node_name`` if it does not exist yet.

    The node name defaults to the NODE_NAME environment variable.
    """
    if node_name is None:
        node_name = os.environ.get(NODE_ENV_VAR_NAME, "")
    try:
        node_ctl.get(node_name)
    except NotFoundError:
        node_ctl.create(Node(metadata=ObjectMeta(name=node_name)))


def check_and_update_node_labels(
    node_name: str,
    node_cache: ObjectStore,
    node_client: ObjectStore,
    sriov_gpu_cache: ObjectStore,
) -> None:
    """Set or clear the driver-needed label depending on SR-IOV GPUs on the node."""
    existing_gpus = sriov_gpu_cache.list({NODE_KEY_NAME: node_name})
    remove_label = not existing_gpus

    node = node_cache.get(node_name)
    original = copy.deepcopy(node.metadata.labels)
    label_present = NVIDIA_DRIVER_NEEDED_KEY in node.metadata.labels
    if label_present and remove_label:
        del node.metadata.labels[NVIDIA_DRIVER_NEEDED_KEY]
    if not label_present and not remove_label:
        node.metadata.labels[NVIDIA_DRIVER_NEEDED_KEY] = "true"

    if node.metadata.labels != original:
        node_client.update(node)