"""Reconciliation of PCIDevice objects with the PCI devices found on a node."""

from __future__ import annotations

import copy
import logging
from typing import Iterable, Mapping, Optional

from .api import (
    NODE_KEY_NAME,
    PARENT_SRIOV_NETWORK_DEVICE,
    SRIOV_FROM_VF,
    PCIDevice,
    PCIDeviceInfo,
    new_pci_device_for_hostname,
    pci_device_name_for_hostname,
)
from .clients import NotFoundError, ObjectStore

log = logging.getLogger(__name__)

PCI_BRIDGE_CLASS_ID = "0604"


def identify_pci_bridge_devices(devices: Iterable[PCIDeviceInfo]) -> list[str]:
    """Addresses of PCI bridges.

    Bridges cannot be bound to vfio-pci even though they share an IOMMU
    group with the devices behind them, so they are skipped.
    """
    return [
        dev.address
        for dev in devices
        if f"{dev.class_id}{dev.subclass_id}" == PCI_BRIDGE_CLASS_ID
    ]


class PCIDeviceHandler:
    """Keeps the PCIDevice objects of a node in line with its hardware."""

    def __init__(
        self,
        client: ObjectStore,
        devices: Iterable[PCIDeviceInfo],
        sriov_network_device_cache: ObjectStore,
        skip_addresses: Iterable[str] = (),
        iommu_groups: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.client = client
        self.devices = list(devices)
        self.sriov_network_device_cache = sriov_network_device_cache
        self.skip_addresses = set(skip_addresses)
        self.iommu_groups = dict(iommu_groups or {})

    def reconcile_pci_devices(self, nodename: str) -> None:
        """Create, refresh and delete PCIDevice objects for ``nodename``."""
        common_labels = {NODE_KEY_NAME: nodename}
        real_addresses: set[str] = set()

        for dev in self.devices:
            if dev.address in self.skip_addresses:
                continue
            real_addresses.add(dev.address)
            name = pci_device_name_for_hostname(dev.address, nodename)
            try:
                dev_cr = self.client.get(name)
            except NotFoundError:
                log.info("device %s does not exist", name)
                to_create = new_pci_device_for_hostname(dev, nodename)
                log.info("creating PCI device: %s", to_create.name)
                to_create.metadata.labels = self.query_sriov_network_device_ownership(
                    to_create, common_labels
                )
                dev_cr = self.client.create(to_create)

            dev_copy = copy.deepcopy(dev_cr)
            dev_copy.status.kernel_driver_in_use = dev.driver
            dev_copy.status.update(dev, nodename, self.iommu_groups)
            self.client.update_status(dev_copy)

        for stored in self.client.list(common_labels):
            if stored.status.address not in real_addresses:
                log.info(
                    "deleting non existent device %s on node %s",
                    stored.name,
                    stored.status.node_name,
                )
                self.client.delete(stored.name)

    def query_sriov_network_device_ownership(
        self, device: PCIDevice, labels: Mapping[str, str]
    ) -> dict[str, str]:
        """Labels for ``device``, marking it as a VF of its SR-IOV network device if it is one."""
        result = dict(labels)
        owners = self.sriov_network_device_cache.get_by_index(SRIOV_FROM_VF, device.name)
        if len(owners) != 1:
            log.debug("pcidevice %s is not a VF, no additional labels needed", device.name)
            return result
        result[PARENT_SRIOV_NETWORK_DEVICE] = owners[0].name
        return result