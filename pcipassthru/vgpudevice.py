"""Reconciliation and configuration of vGPU devices on a node."""

from __future__ import annotations

import copy
import logging
import os
import uuid
from typing import Callable, Iterable, Optional

from .api import (
    MDEV_BUS_CLASS_ROOT,
    MDEV_SUPPORT_TYPES_DIR,
    NODE_KEY_NAME,
    PARENT_SRIOV_GPU_DEVICE_LABEL,
    VGPUDevice,
    VGPUStatus,
    pci_device_name_for_hostname,
)
from .clients import NotFoundError, ObjectStore

log = logging.getLogger(__name__)

DEFAULT_NS = "harvester-system"
KUBEVIRT_CR = "kubevirt"


class VGPUError(RuntimeError):
    """A vGPU operation failed."""


def contains_vgpu(vgpu: VGPUDevice, vgpu_list: Iterable[VGPUDevice]) -> Optional[VGPUDevice]:
    """The entry of ``vgpu_list`` with the same name as ``vgpu``, or None."""
    return next((v for v in vgpu_list if v.name == vgpu.name), None)


def _write_sysfs(path: str, data: str) -> None:
    fd = os.open(path, os.O_WRONLY)
    try:
        os.write(fd, data.encode())
    finally:
        os.close(fd)


class VGPUHandler:
    """Keeps the VGPUDevice objects of a node in line with its hardware."""

    def __init__(
        self,
        node_name: str,
        vgpu_cache: ObjectStore,
        sriov_gpu_cache: ObjectStore,
        vgpu_client: Optional[ObjectStore] = None,
        enqueue: Optional[Callable[[str], None]] = None,
        mdev_bus_class_root: str = MDEV_BUS_CLASS_ROOT,
    ) -> None:
        self.node_name = node_name
        self.vgpu_cache = vgpu_cache
        self.vgpu_client = vgpu_client if vgpu_client is not None else vgpu_cache
        self.sriov_gpu_cache = sriov_gpu_cache
        self.enqueue = enqueue if enqueue is not None else (lambda name: None)
        self.mdev_bus_class_root = mdev_bus_class_root

    def reconcile_vgpu_setup(self, vgpu_devices: Iterable[VGPUDevice]) -> None:
        """Create discovered vGPUs, refresh their status, and delete vanished ones.

        A stored vGPU whose parent GPU is enabled is kept even if it was not
        discovered, since it is recreated once the parent is configured again.
        """
        discovered = list(vgpu_devices)
        stored = self.vgpu_cache.list({NODE_KEY_NAME: self.node_name})

        for vgpu in discovered:
            existing = contains_vgpu(vgpu, stored)
            if existing is None:
                self.vgpu_client.create(vgpu)
            elif existing.status != vgpu.status:
                # after a reboot the stored status no longer matches the host
                existing.status = copy.deepcopy(vgpu.status)
                self.vgpu_client.update_status(existing)

        for vgpu in stored:
            parent_enabled = self.is_parent_gpu_enabled(vgpu.spec.parent_gpu_device_address)
            if not parent_enabled and contains_vgpu(vgpu, discovered) is None:
                self.vgpu_client.delete(vgpu.name)

    def is_parent_gpu_enabled(self, gpu_address: str) -> bool:
        """True if the SR-IOV GPU at ``gpu_address`` on this node exists and is enabled."""
        name = pci_device_name_for_hostname(gpu_address, self.node_name)
        try:
            parent = self.sriov_gpu_cache.get(name)
        except NotFoundError:
            return False
        return parent.spec.enabled

    def reconcile_disabled_vgpu_status(self, vgpu: Optional[VGPUDevice]) -> Optional[VGPUDevice]:
        """Requeue the disabled siblings of ``vgpu`` so their available types are refreshed."""
        if (
            vgpu is None
            or vgpu.metadata.deletion_timestamp is not None
            or vgpu.spec.node_name != self.node_name
        ):
            return vgpu

        parent = pci_device_name_for_hostname(vgpu.spec.parent_gpu_device_address, self.node_name)
        for sibling in self.vgpu_cache.list({PARENT_SRIOV_GPU_DEVICE_LABEL: parent}):
            if sibling.spec.enabled or sibling.name == vgpu.name:
                continue
            log.debug("requeue device %s to force status reconcile", sibling.name)
            self.enqueue(sibling.name)
        return vgpu

    def enable_vgpu(self, vgpu: VGPUDevice) -> Optional[VGPUDevice]:
        """Create the mediated device for ``vgpu`` and record it in its status."""
        mdev_type = vgpu.status.available_types.get(vgpu.spec.vgpu_type_name)
        if mdev_type is None:
            raise VGPUError(
                f"VGPUType specified {vgpu.spec.vgpu_type_name} is not available "
                f"for vGPU {vgpu.spec.address}"
            )

        vgpu_uuid = str(uuid.uuid4())
        create_path = os.path.join(
            self.mdev_bus_class_root,
            vgpu.spec.address,
            MDEV_SUPPORT_TYPES_DIR,
            mdev_type,
            "create",
        )
        if not os.path.exists(create_path):
            raise VGPUError(f"error looking up create file for vgpu {vgpu.name}: {create_path}")
        try:
            _write_sysfs(create_path, vgpu_uuid)
        except OSError as err:
            raise VGPUError(f"error writing to create file for vgpu {vgpu.name}: {err}") from err

        vgpu.status.vgpu_status = VGPUStatus.ENABLED
        vgpu.status.uuid = vgpu_uuid
        updated = self.vgpu_client.update_status(vgpu)
        return self.reconcile_disabled_vgpu_status(updated)