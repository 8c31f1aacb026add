"""Discovery of USB devices on a node and passthrough of claimed USB devices."""

from __future__ import annotations

import copy
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from .api import (
    NODE_ENV_VAR_NAME,
    NODE_KEY_NAME,
    USB_DEVICE_PCI_ADDRESS,
    ObjectMeta,
    USBDevice,
    USBDeviceClaim,
    USBDeviceStatus,
)
from .clients import (
    KubeVirt,
    NotFoundError,
    ObjectStore,
    PermittedHostDevices,
    USBHostDevice,
    USBSelector,
)

log = logging.getLogger(__name__)

KUBEVIRT_NAMESPACE = "harvester-system"
KUBEVIRT_RESOURCE = "kubevirt"
KUBEVIRT_RESOURCE_PREFIX = "kubevirt.io/"
USB_DEV_ROOT = "/dev/bus/usb/"


class USBDeviceError(RuntimeError):
    """A USB passthrough operation failed."""


@dataclass
class CommonLabel:
    """Labels shared by the USBDevice objects of one node."""

    node_name: str = field(default_factory=lambda: os.environ.get(NODE_ENV_VAR_NAME, ""))

    def labels(self) -> dict[str, str]:
        return {NODE_KEY_NAME: self.node_name}

    def selector(self) -> str:
        return f"{NODE_KEY_NAME}={self.node_name}"


@dataclass
class LocalUSBDevice:
    """A USB device as found on the host."""

    name: str = ""
    manufacturer: str = ""
    vendor: int = 0
    product: int = 0
    device_path: str = ""
    pci_address: str = ""


class USBDevicePlugin(Protocol):
    def is_started(self) -> bool: ...

    def start_device_plugin(self) -> None: ...

    def stop_device_plugin(self) -> None: ...


WalkUSBDevices = Callable[[], Mapping[int, Sequence[LocalUSBDevice]]]
Describe = Callable[[int, int], str]


def _default_describe(vendor: int, product: int) -> str:
    return f"{vendor:04x}:{product:04x}"


def usb_device_name(node_name: str, device: LocalUSBDevice) -> str:
    """Object name of ``device`` on ``node_name``."""
    path = device.device_path.replace(USB_DEV_ROOT, "").replace("/", "")
    return f"{node_name}-{device.vendor:04x}-{device.product:04x}-{path}"


def resource_name(name: str) -> str:
    """Resource name under which the USB device is offered to virtual machines."""
    return f"{KUBEVIRT_RESOURCE_PREFIX}{name}"


def is_status_changed(existed: USBDevice, device: LocalUSBDevice) -> bool:
    """True if the stored vendor or product id differs from the device found."""
    return (
        existed.status.vendor_id != f"{device.vendor:04x}"
        or existed.status.product_id != f"{device.product:04x}"
    )


class USBDeviceHandler:
    """Keeps the USBDevice objects of a node in line with the devices attached to it."""

    def __init__(
        self,
        usb_client: ObjectStore,
        usb_claim_cache: ObjectStore,
        walk_usb_devices: WalkUSBDevices,
        common_label: Optional[CommonLabel] = None,
        describe: Describe = _default_describe,
    ) -> None:
        self.usb_client = usb_client
        self.usb_claim_cache = usb_claim_cache
        self.walk_usb_devices = walk_usb_devices
        self.common_label = common_label if common_label is not None else CommonLabel()
        self.describe = describe

    def _status_for(self, device: LocalUSBDevice, node_name: str) -> USBDeviceStatus:
        return USBDeviceStatus(
            vendor_id=f"{device.vendor:04x}",
            product_id=f"{device.product:04x}",
            resource_name=resource_name(usb_device_name(node_name, device)),
            node_name=node_name,
            device_path=device.device_path,
            description=self.describe(device.vendor, device.product),
            pci_address=device.pci_address,
        )

    def reconcile(self) -> None:
        """Create, update and delete USBDevice objects to match the host."""
        node_name = self.common_label.node_name
        local = self.walk_usb_devices()
        stored = {
            dev.status.device_path: dev
            for dev in self.usb_client.list(self.common_label.labels())
        }
        self.handle_list(*self.get_list(local, stored, node_name))

    def get_list(
        self,
        local_usb_devices: Mapping[int, Sequence[LocalUSBDevice]],
        stored: Mapping[str, USBDevice],
        node_name: str,
    ) -> tuple[list[USBDevice], list[USBDevice], list[USBDevice]]:
        """Split into objects to create, to update and to delete.

        ``stored`` maps device paths to the stored objects. Stored devices that
        are no longer found but still enabled are kept.
        """
        remaining = dict(stored)
        create_list: list[USBDevice] = []
        update_list: list[USBDevice] = []

        for devices in local_usb_devices.values():
            for device in devices:
                existed = remaining.pop(device.device_path, None)
                if existed is None:
                    name = usb_device_name(node_name, device)
                    create_list.append(
                        USBDevice(
                            metadata=ObjectMeta(name=name, labels=self.common_label.labels()),
                            status=self._status_for(device, node_name),
                        )
                    )
                elif is_status_changed(existed, device):
                    changed = copy.deepcopy(existed)
                    changed.status = self._status_for(device, node_name)
                    update_list.append(changed)

        delete_list: list[USBDevice] = []
        for usb_device in remaining.values():
            if usb_device.status.enabled:
                log.warning(
                    "USB device %s is still enabled but no longer discovered on the node, "
                    "skipping delete",
                    usb_device.name,
                )
                continue
            delete_list.append(usb_device)

        return create_list, update_list, delete_list

    def handle_list(
        self,
        create_list: Sequence[USBDevice],
        update_list: Sequence[USBDevice],
        delete_list: Sequence[USBDevice],
    ) -> None:
        """Apply the changes computed by :meth:`get_list`."""
        for usb_device in create_list:
            created = self.usb_client.create(
                USBDevice(
                    metadata=ObjectMeta(
                        name=usb_device.name, labels=dict(usb_device.metadata.labels)
                    )
                )
            )
            created.status = copy.deepcopy(usb_device.status)
            self.usb_client.update_status(created)

        for usb_device in update_list:
            self.usb_client.update_status(usb_device)

        for usb_device in delete_list:
            self.usb_client.delete(usb_device.name)

    def on_device_change(
        self, namespace: str, name: str, obj: Optional[Any]
    ) -> list[tuple[str, str]]:
        """Keys of the claims to reconcile after a change to a USBDevice on this node."""
        if obj is None:
            return []
        if not isinstance(obj, USBDevice):
            log.error("error casting object to USBDevice: %r", obj)
            return []
        if obj.status.node_name != self.common_label.node_name:
            return []
        claims = self.usb_claim_cache.get_by_index(USB_DEVICE_PCI_ADDRESS, obj.status.pci_address)
        return [(claim.metadata.namespace, claim.name) for claim in claims]


class USBDeviceClaimHandler:
    """Permits claimed USB devices for virtual machines and releases them on removal."""

    def __init__(
        self,
        usb_device_cache: ObjectStore,
        usb_claim_client: ObjectStore,
        usb_client: ObjectStore,
        virt_client: ObjectStore,
        common_label: Optional[CommonLabel] = None,
        plugin_factory: Optional[Callable[[USBDevice], USBDevicePlugin]] = None,
    ) -> None:
        self.usb_device_cache = usb_device_cache
        self.usb_claim_client = usb_claim_client
        self.usb_client = usb_client
        self.virt_client = virt_client
        self.common_label = common_label if common_label is not None else CommonLabel()
        self.plugin_factory = plugin_factory
        self.managed_device_plugins: dict[str, USBDevicePlugin] = {}
        self._lock = threading.Lock()

    def _local_device(self, claim: USBDeviceClaim) -> Optional[USBDevice]:
        try:
            usb_device = self.usb_device_cache.get(claim.name)
        except NotFoundError:
            log.error("usb device %s not found", claim.name)
            return None
        if usb_device.status.node_name != self.common_label.node_name:
            log.info(
                "usbdevice %s is not on node %s", usb_device.name, self.common_label.node_name
            )
            return None
        return usb_device

    def on_usb_device_claim_changed(
        self, name: str, claim: Optional[USBDeviceClaim]
    ) -> Optional[USBDeviceClaim]:
        """Permit the claimed device, start its plugin and record it in the claim."""
        if claim is None or claim.metadata.deletion_timestamp is not None:
            return claim
        if not claim.metadata.owner_references:
            raise USBDeviceError(f"usb device claim {claim.name} has no owner reference")

        usb_device = self._local_device(claim)
        if usb_device is None:
            return claim

        with self._lock:
            virt = self.virt_client.get(KUBEVIRT_RESOURCE)
            self.update_kubevirt(virt, usb_device)

            if self.plugin_factory is not None:
                plugin = self.managed_device_plugins.get(claim.name)
                if plugin is None:
                    plugin = self.plugin_factory(usb_device)
                    self.managed_device_plugins[claim.name] = plugin
                if not plugin.is_started():
                    plugin.start_device_plugin()

            if not usb_device.status.enabled:
                enabled = copy.deepcopy(usb_device)
                enabled.status.enabled = True
                self.usb_client.update_status(enabled)

            updated = copy.deepcopy(claim)
            updated.status.pci_address = usb_device.status.pci_address
            updated.status.node_name = usb_device.status.node_name
            return self.usb_claim_client.update_status(updated)

    def on_remove(self, name: str, claim: Optional[USBDeviceClaim]) -> Optional[USBDeviceClaim]:
        """Withdraw the device from the permitted list, stop its plugin and disable it."""
        if claim is None or claim.metadata.deletion_timestamp is None:
            return claim

        usb_device = self._local_device(claim)
        if usb_device is None:
            return claim

        with self._lock:
            virt = self.virt_client.get(KUBEVIRT_RESOURCE)
            if virt.permitted_host_devices is None or not virt.permitted_host_devices.usb:
                return claim

            updated = copy.deepcopy(virt)
            usbs = updated.permitted_host_devices.usb
            for index, usb in enumerate(usbs):
                if usb.resource_name == usb_device.status.resource_name:
                    del usbs[index]
                    break

            if usbs != virt.permitted_host_devices.usb:
                try:
                    self.virt_client.update(updated)
                except NotFoundError:
                    return claim

            plugin = self.managed_device_plugins.pop(claim.name, None)
            if plugin is not None:
                plugin.stop_device_plugin()

            disabled = copy.deepcopy(usb_device)
            disabled.status.enabled = False
            self.usb_client.update_status(disabled)
        return claim

    def update_kubevirt(self, virt: KubeVirt, usb_device: USBDevice) -> KubeVirt:
        """Add ``usb_device`` to the permitted USB devices unless it is already there."""
        updated = copy.deepcopy(virt)
        if updated.permitted_host_devices is None:
            updated.permitted_host_devices = PermittedHostDevices()
        usbs = updated.permitted_host_devices.usb

        if any(usb.resource_name == usb_device.status.resource_name for usb in usbs):
            return virt

        usbs.append(
            USBHostDevice(
                selectors=[
                    USBSelector(
                        vendor=usb_device.status.vendor_id,
                        product=usb_device.status.product_id,
                    )
                ],
                resource_name=usb_device.status.resource_name,
                external_resource_provider=True,
            )
        )

        if (
            virt.permitted_host_devices is not None
            and virt.permitted_host_devices.usb == usbs
        ):
            return virt
        return self.virt_client.update(updated)