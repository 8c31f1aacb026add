"""Passthrough of claimed PCI devices via the vfio-pci driver."""

from __future__ import annotations

import copy
import errno
import logging
import os
from typing import Any, Iterable, Optional

from .api import (
    NODE_KEY_NAME,
    PCI_DEVICE_DRIVER,
    PCIDevice,
    PCIDeviceClaim,
)
from .clients import KubeVirt, NotFoundError, ObjectStore, PciHostDevice, PermittedHostDevices

log = logging.getLogger(__name__)

VFIO_PCI_DRIVER = "vfio-pci"
DEFAULT_NS = "harvester-system"
KUBEVIRT_CR = "kubevirt"
DRIVERS_ROOT = "/sys/bus/pci/drivers"


class PassthroughError(RuntimeError):
    """A passthrough operation on a PCI device failed."""


def _write_sysfs(path: str, data: str) -> None:
    """Write ``data`` to an existing attribute file without creating it."""
    fd = os.open(path, os.O_WRONLY)
    try:
        os.write(fd, data.encode())
    finally:
        os.close(fd)


def device_bound_to_driver(driver_path: str, pci_address: str) -> bool:
    """True if the device at ``pci_address`` appears under ``driver_path``."""
    return os.path.exists(os.path.join(driver_path, pci_address))


def unbind_device_from_driver(addr: str, driver: str, drivers_root: str = DRIVERS_ROOT) -> None:
    """Unbind the device at ``addr`` from ``driver`` if it is bound to it."""
    driver_path = os.path.join(drivers_root, driver)
    if not device_bound_to_driver(driver_path, addr):
        return
    _write_sysfs(os.path.join(driver_path, "unbind"), addr)
    if device_bound_to_driver(driver_path, addr):
        raise PassthroughError("device still bound to driver, will check again")


def bind_device_to_vfio_pci_driver(pd: PCIDevice, drivers_root: str = DRIVERS_ROOT) -> None:
    """Bind the device to vfio-pci, registering its vendor and device id first."""
    vfio_path = os.path.join(drivers_root, VFIO_PCI_DRIVER)
    address = pd.status.address
    if device_bound_to_driver(vfio_path, address):
        return

    device_id = f"{pd.status.vendor_id} {pd.status.device_id}"
    log.info("binding device %s [%s] to vfio-pci", pd.name, device_id)
    try:
        _write_sysfs(os.path.join(vfio_path, "new_id"), device_id)
    except OSError as err:
        if err.errno != errno.EEXIST:
            raise PassthroughError(f"error writing to new_id file: {err}") from err

    log.info("binding device %s to vfio-pci", address)
    try:
        _write_sysfs(os.path.join(vfio_path, "bind"), address)
    except OSError as err:
        raise PassthroughError(f"error writing to bind file: {err}") from err

    if not device_bound_to_driver(vfio_path, address):
        raise PassthroughError(f"no device {address} found at {vfio_path}")


def pci_device_is_claimed(pd: PCIDevice, pdcs: Iterable[PCIDeviceClaim], node_name: str) -> bool:
    """True if a claim owned by ``pd`` is among ``pdcs``."""
    for pdc in pdcs:
        if pd.status.node_name != node_name:
            continue
        if not pdc.metadata.owner_references:
            return False
        if pdc.metadata.owner_references[0].name == pd.name:
            return True
    return False


def get_orphaned_pci_devices(
    pdcs: Iterable[PCIDeviceClaim], pds: Iterable[PCIDevice], node_name: str
) -> list[PCIDevice]:
    """Devices on this node bound to vfio-pci without a claim."""
    claims = list(pdcs)
    return [
        copy.deepcopy(pd)
        for pd in pds
        if pd.status.kernel_driver_in_use == VFIO_PCI_DRIVER
        and pd.status.node_name == node_name
        and not pci_device_is_claimed(pd, claims, node_name)
    ]


def reconcile_kubevirt_cr(kv: KubeVirt, pd: PCIDevice) -> KubeVirt:
    """Return a copy of ``kv`` that permits ``pd`` as an externally provided device."""
    result = copy.deepcopy(kv)
    if result.permitted_host_devices is None:
        result.permitted_host_devices = PermittedHostDevices()
    permitted = result.permitted_host_devices
    name = pd.status.resource_name

    existing = next((dev for dev in permitted.pci_host_devices if dev.resource_name == name), None)
    if existing is not None and existing.external_resource_provider:
        return result

    permitted.pci_host_devices = [
        dev for dev in permitted.pci_host_devices if dev is not existing
    ]
    permitted.pci_host_devices.append(
        PciHostDevice(
            pci_vendor_selector=f"{pd.status.vendor_id}:{pd.status.device_id}",
            resource_name=name,
            external_resource_provider=True,
        )
    )
    return result


class PCIDeviceClaimHandler:
    """Binds claimed devices to vfio-pci and permits them for virtual machines."""

    def __init__(
        self,
        pdc_client: ObjectStore,
        pd_client: ObjectStore,
        kubevirt_client: ObjectStore,
        node_name: str,
        drivers_root: str = DRIVERS_ROOT,
    ) -> None:
        self.pdc_client = pdc_client
        self.pd_client = pd_client
        self.kubevirt_client = kubevirt_client
        self.node_name = node_name
        self.drivers_root = drivers_root

    @property
    def _vfio_path(self) -> str:
        return os.path.join(self.drivers_root, VFIO_PCI_DRIVER)

    def get_pci_device_for_claim(self, pdc: PCIDeviceClaim) -> PCIDevice:
        """The PCIDevice that owns ``pdc``."""
        if not pdc.metadata.owner_references:
            raise PassthroughError(f"Cannot find PCIDevice that owns {pdc.name}")
        return self.pd_client.get(pdc.metadata.owner_references[0].name)

    def permit_host_device_in_kubevirt(self, pd: PCIDevice) -> bool:
        """Make sure ``pd`` is permitted; True if the configuration was changed."""
        log.info("adding %s to the list of permitted devices", pd.name)
        try:
            kv = self.kubevirt_client.get(KUBEVIRT_CR)
        except NotFoundError as err:
            raise PassthroughError(f"cannot obtain KubeVirt CR: {err}") from err
        updated = reconcile_kubevirt_cr(kv, pd)
        if updated.permitted_host_devices == kv.permitted_host_devices:
            return False
        self.kubevirt_client.update(updated)
        return True

    def enable_passthrough(self, pd: PCIDevice) -> None:
        """Bind ``pd`` to vfio-pci and record the driver in its status."""
        bind_device_to_vfio_pci_driver(pd, self.drivers_root)
        pd_copy = copy.deepcopy(pd)
        pd_copy.status.kernel_driver_in_use = VFIO_PCI_DRIVER
        self.pd_client.update_status(pd_copy)

    def disable_passthrough(self, pd: PCIDevice) -> None:
        """Unbind ``pd`` from vfio-pci and give it back to its original driver."""
        try:
            unbind_device_from_driver(pd.status.address, VFIO_PCI_DRIVER, self.drivers_root)
        except (OSError, PassthroughError) as err:
            raise PassthroughError(f"failed unbinding driver: ({err})") from err
        self.bind_device_to_original_driver(pd)

    def bind_device_to_original_driver(self, pd: PCIDevice) -> None:
        """Bind ``pd`` to the driver recorded in its annotations, if any."""
        original = pd.metadata.annotations.get(PCI_DEVICE_DRIVER)
        if original is None:
            log.info(
                "no annotation %s found for original device driver on pcidevice %s",
                PCI_DEVICE_DRIVER,
                pd.name,
            )
            return
        if original == "":
            log.debug("no original driver present on pcidevice: %s", pd.name)
            return

        log.debug("binding device %s [%s] to %s", pd.name, pd.status.address, original)
        _write_sysfs(os.path.join(self.drivers_root, original, "bind"), pd.status.address)
        pd_copy = copy.deepcopy(pd)
        pd_copy.status.kernel_driver_in_use = original
        self.pd_client.update_status(pd_copy)

    def attempt_to_enable_passthrough(self, pd: PCIDevice, pdc: PCIDeviceClaim) -> None:
        """Move ``pd`` to vfio-pci unless it is already there, and mark ``pdc`` enabled."""
        if not device_bound_to_driver(self._vfio_path, pd.status.address):
            log.info("enabling passthrough for PDC: %s", pdc.name)
            if pd.status.kernel_driver_in_use.strip():
                unbind_device_from_driver(
                    pd.status.address, pd.status.kernel_driver_in_use, self.drivers_root
                )
            original = pd.metadata.annotations.get(PCI_DEVICE_DRIVER)
            if original is not None:
                unbind_device_from_driver(pd.status.address, original, self.drivers_root)
            self.enable_passthrough(pd)
        pdc.status.passthrough_enabled = True

    def unbind_orphaned_pci_devices(self) -> None:
        """Unbind from vfio-pci every device on this node that has no claim."""
        orphans = get_orphaned_pci_devices(
            self.pdc_client.list(), self.pd_client.list(), self.node_name
        )
        for pd in orphans:
            unbind_device_from_driver(pd.status.address, VFIO_PCI_DRIVER, self.drivers_root)

    def on_device_change(
        self, namespace: str, name: str, obj: Optional[Any]
    ) -> list[tuple[str, str]]:
        """Keys of the claims to reconcile after a change to a PCIDevice on this node."""
        if not isinstance(obj, PCIDevice):
            return []
        if obj.status.node_name != self.node_name or obj.status.kernel_driver_in_use == VFIO_PCI_DRIVER:
            return []
        related = []
        for claim in self.pdc_client.list({NODE_KEY_NAME: self.node_name}):
            for owner in claim.metadata.owner_references:
                if (
                    owner.kind == obj.kind
                    and owner.api_version == obj.api_version
                    and owner.name == obj.name
                ):
                    related.append((claim.metadata.namespace, claim.name))
        return related