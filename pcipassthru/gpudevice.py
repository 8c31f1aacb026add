"""Reconciliation of SRIOVGPUDevice objects with the GPUs found on a node."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .api import NODE_KEY_NAME, NVIDIA_DRIVER_LABEL, SRIOVGPUDevice
from .clients import NotFoundError, ObjectStore, Pod

log = logging.getLogger(__name__)

SRIOV_MANAGE_COMMAND = "/usr/lib/nvidia/sriov-manage"


def contains_gpu_devices(gpu: SRIOVGPUDevice, gpu_list: Iterable[SRIOVGPUDevice]) -> bool:
    """True if a GPU with the same name is in ``gpu_list``."""
    return any(v.name == gpu.name for v in gpu_list)


def is_not_driver_pod(pod: Pod) -> bool:
    """True unless the pod carries the GPU driver daemonset label."""
    if not pod.metadata.labels:
        return True
    key, _, value = NVIDIA_DRIVER_LABEL.partition("=")
    return pod.metadata.labels.get(key) != value


class GPUHandler:
    """Keeps the SRIOVGPUDevice objects of a node in line with its hardware."""

    def __init__(
        self,
        node_name: str,
        sriov_gpu_cache: ObjectStore,
        pci_device_claim_cache: ObjectStore,
        sriov_gpu_client: Optional[ObjectStore] = None,
    ) -> None:
        self.node_name = node_name
        self.sriov_gpu_cache = sriov_gpu_cache
        self.sriov_gpu_client = sriov_gpu_client if sriov_gpu_client is not None else sriov_gpu_cache
        self.pci_device_claim_cache = pci_device_claim_cache

    def reconcile_sriov_gpu_setup(self, sriov_gpu_devices: Iterable[SRIOVGPUDevice]) -> None:
        """Create discovered GPUs and delete stored ones no longer present.

        GPUs already claimed as PCI devices are passed through and skipped.
        """
        discovered = list(sriov_gpu_devices)
        for gpu in discovered:
            try:
                claim = self.pci_device_claim_cache.get(gpu.name)
            except NotFoundError:
                pass
            else:
                log.debug("skipping creation of SRIOVGPUDevice %s as PCIDeviceClaim exists", claim.name)
                continue
            self.create_or_update_sriov_gpu_device(gpu)

        for existing in self.sriov_gpu_cache.list({NODE_KEY_NAME: self.node_name}):
            if not contains_gpu_devices(existing, discovered):
                self.sriov_gpu_client.delete(existing.name)

    def create_or_update_sriov_gpu_device(self, gpu: SRIOVGPUDevice) -> None:
        """Create ``gpu`` unless an object of that name already exists."""
        try:
            self.sriov_gpu_cache.get(gpu.name)
        except NotFoundError:
            self.sriov_gpu_client.create(gpu)