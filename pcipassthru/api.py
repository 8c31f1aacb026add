"""Resource types for the devices.harvesterhci.io/v1beta1 API group."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional

GROUP = "devices.harvesterhci.io"
VERSION = "v1beta1"
API_VERSION = f"{GROUP}/{VERSION}"

UNKNOWN = "unknown"

NODE_ENV_VAR_NAME = "NODE_NAME"
NODE_KEY_NAME = "nodename"

PCI_DEVICE_DRIVER = "harvesterhci.io/pcideviceDriver"
PLUGIN_NAME_PREFIX = "/var/lib/kubelet/device-plugins/kubevirt-"
SOCKET_FILE_NAME_LIMIT = 108
VF_SUFFIX = "VIRTUAL_FUNCTION"
SHORTENED_VF_SUFFIX = "VF"

HARVESTER_VGPU_TYPE = "vgpu.harvesterhci.io/type"
SYS_DEV_ROOT = "/sys/bus/pci/devices/"
MDEV_ROOT = "/sys/bus/mdev/devices/"
MDEV_BUS_CLASS_ROOT = "/sys/class/mdev_bus/"
MDEV_SUPPORT_TYPES_DIR = "mdev_supported_types"
PARENT_SRIOV_GPU_DEVICE_LABEL = "harvesterhci.io/parentSRIOVGPUDevice"
DEFAULT_NAMESPACE = "harvester-system"
NVIDIA_DRIVER_LABEL = "app=nvidia-driver-daemonset"
NVIDIA_DRIVER_NEEDED_KEY = "sriovgpu.harvesterhci.io/driver-needed"

DEVICE_DISABLED = "sriovNetworkDeviceDisabled"
DEVICE_ENABLED = "sriovNetworkDeviceEnabled"
PARENT_SRIOV_NETWORK_DEVICE = "harvesterhci.io/parent-sriov-network-device"
SRIOV_FROM_VF = "sriov-dev-from-vf"

USB_DEVICE_PCI_ADDRESS = "usb-device-pci-address"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")
_BRACKETED = re.compile(r"\[([^\]]+)\]")
_WHITESPACE = re.compile(r"[\t\n\f\r ]+")
_NON_RESOURCE_CHARS = re.compile(r"[^a-zA-Z0-9_.]+")


@dataclass
class OwnerReference:
    """Reference from an object to the object that owns it."""

    name: str
    kind: str = ""
    api_version: str = ""
    uid: str = ""


@dataclass
class ObjectMeta:
    """Metadata common to every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None


class _Resource:
    kind: ClassVar[str] = ""
    api_version: ClassVar[str] = API_VERSION

    @property
    def name(self) -> str:
        return self.metadata.name  # type: ignore[attr-defined]


@dataclass
class PCIDeviceInfo:
    """A PCI device as discovered on the host."""

    address: str
    vendor_id: str = ""
    vendor_name: str = UNKNOWN
    product_id: str = ""
    product_name: str = UNKNOWN
    class_id: str = ""
    class_name: str = UNKNOWN
    subclass_id: str = ""
    subclass_name: str = UNKNOWN
    driver: str = ""


@dataclass
class PCIDeviceStatus:
    """Observed state of a PCI device."""

    address: str = ""
    vendor_id: str = ""
    device_id: str = ""
    class_id: str = ""
    iommu_group: str = ""
    node_name: str = ""
    resource_name: str = ""
    description: str = ""
    kernel_driver_in_use: str = ""

    def update(self, dev: PCIDeviceInfo, hostname: str, iommu_groups: dict[str, int]) -> None:
        """Refresh the status from a discovered device."""
        self.address = dev.address
        self.vendor_id = dev.vendor_id
        self.device_id = dev.product_id
        self.class_id = f"{dev.class_id}{dev.subclass_id}"
        self.resource_name = resource_name(dev)
        self.description = description(dev)
        if dev.address in iommu_groups:
            self.iommu_group = str(iommu_groups[dev.address])
        self.kernel_driver_in_use = dev.driver
        self.node_name = hostname


@dataclass
class PCIDevice(_Resource):
    """A PCI device on a node."""

    kind: ClassVar[str] = "PCIDevice"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: PCIDeviceStatus = field(default_factory=PCIDeviceStatus)


def _strip(text: str) -> str:
    return _NON_ALNUM.sub("", text)


def _extract_vendor_name_from_brackets(vendor_name: str) -> str:
    match = _BRACKETED.search(vendor_name)
    if match is None:
        raise ValueError(f"no bracketed vendor name in {vendor_name!r}")
    return _strip(match.group(1).split("/")[0])


def description(dev: PCIDeviceInfo) -> str:
    """Human readable description of a PCI device."""
    vendor = dev.vendor_name if dev.vendor_name != UNKNOWN else f"Vendor {dev.vendor_id}"
    product = dev.product_name if dev.product_name != UNKNOWN else f"Device {dev.product_id}"
    if dev.subclass_name != UNKNOWN:
        class_name = dev.subclass_name
    elif dev.class_name != UNKNOWN:
        class_name = dev.class_name
    else:
        class_name = f"Class {dev.class_id}{dev.subclass_id}"
    return f"{class_name}: {vendor} {product}"


def resource_name(dev: PCIDeviceInfo) -> str:
    """Resource name under which the device is offered to virtual machines."""
    if "[" in dev.vendor_name:
        vendor_base = _extract_vendor_name_from_brackets(dev.vendor_name)
    else:
        vendor_base = _strip(dev.vendor_name.split(" ")[0])
    vendor_cleaned = vendor_base.replace(" ", "").lower() + ".com"
    if dev.product_name == UNKNOWN:
        return f"{vendor_cleaned}/{dev.product_id}"
    product = dev.product_name.strip().upper()
    product = product.replace("/", "_").replace(".", "_")
    product = _WHITESPACE.sub("_", product)
    product = _NON_RESOURCE_CHARS.sub("", product)
    return trim_resource_name_if_needed(vendor_cleaned, product, dev.product_id)


def trim_resource_name_if_needed(vendor_cleaned: str, product_cleaned: str, device_id: str) -> str:
    """Shorten a resource name whose plugin socket path would be too long."""
    while True:
        socket_name = f"{PLUGIN_NAME_PREFIX}/{vendor_cleaned}-{product_cleaned}.sock"
        if len(socket_name.encode()) <= SOCKET_FILE_NAME_LIMIT:
            return f"{vendor_cleaned}/{product_cleaned}"
        if VF_SUFFIX not in product_cleaned:
            return f"{vendor_cleaned}/{device_id}"
        product_cleaned = product_cleaned.replace(VF_SUFFIX, SHORTENED_VF_SUFFIX)


def pci_device_name_for_hostname(address: str, hostname: str) -> str:
    """Object name of the PCI device at ``address`` on ``hostname``."""
    safe = address.replace(":", "").replace(".", "")
    return f"{hostname}-{safe}"


def new_pci_device_for_hostname(dev: PCIDeviceInfo, hostname: str) -> PCIDevice:
    """Build a PCIDevice object for a discovered device."""
    return PCIDevice(
        metadata=ObjectMeta(
            name=pci_device_name_for_hostname(dev.address, hostname),
            annotations={PCI_DEVICE_DRIVER: dev.driver},
        ),
        status=PCIDeviceStatus(
            address=dev.address,
            vendor_id=dev.vendor_id,
            device_id=dev.product_id,
            class_id=f"{dev.class_id}{dev.subclass_id}",
            node_name=hostname,
            resource_name=resource_name(dev),
            description=description(dev),
            kernel_driver_in_use=dev.driver,
        ),
    )


@dataclass
class PCIDeviceClaimSpec:
    address: str = ""
    node_name: str = ""
    user_name: str = ""

    def node_addr(self) -> str:
        return f"{self.node_name}-{self.address}"


@dataclass
class PCIDeviceClaimStatus:
    kernel_driver_to_unbind: str = ""
    passthrough_enabled: bool = False


@dataclass
class PCIDeviceClaim(_Resource):
    """Reservation of a PCI device for passthrough."""

    kind: ClassVar[str] = "PCIDeviceClaim"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PCIDeviceClaimSpec = field(default_factory=PCIDeviceClaimSpec)
    status: PCIDeviceClaimStatus = field(default_factory=PCIDeviceClaimStatus)


@dataclass
class Node(_Resource):
    """Per-node object used to drive device reconciliation on that node."""

    kind: ClassVar[str] = "Node"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)


@dataclass
class SRIOVGPUDeviceSpec:
    address: str = ""
    node_name: str = ""
    enabled: bool = False


@dataclass
class SRIOVGPUDeviceStatus:
    vf_addresses: list[str] = field(default_factory=list)
    vgpu_devices: list[str] = field(default_factory=list)


@dataclass
class SRIOVGPUDevice(_Resource):
    """An SR-IOV capable GPU on a node."""

    kind: ClassVar[str] = "SRIOVGPUDevice"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SRIOVGPUDeviceSpec = field(default_factory=SRIOVGPUDeviceSpec)
    status: SRIOVGPUDeviceStatus = field(default_factory=SRIOVGPUDeviceStatus)


class VGPUStatus(str, enum.Enum):
    ENABLED = "vGPUConfigured"
    DISABLED = ""


@dataclass
class VGPUDeviceSpec:
    vgpu_type_name: str = ""
    address: str = ""
    enabled: bool = False
    node_name: str = ""
    parent_gpu_device_address: str = ""


@dataclass
class VGPUDeviceStatus:
    vgpu_status: VGPUStatus = VGPUStatus.DISABLED
    uuid: str = ""
    configured_vgpu_type_name: str = ""
    available_types: dict[str, str] = field(default_factory=dict)


@dataclass
class VGPUDevice(_Resource):
    """A vGPU on a node."""

    kind: ClassVar[str] = "VGPUDevice"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: VGPUDeviceSpec = field(default_factory=VGPUDeviceSpec)
    status: VGPUDeviceStatus = field(default_factory=VGPUDeviceStatus)


@dataclass
class SRIOVNetworkDeviceSpec:
    address: str = ""
    node_name: str = ""
    num_vfs: int = 0


@dataclass
class SRIOVNetworkDeviceStatus:
    vf_addresses: list[str] = field(default_factory=list)
    vf_pci_devices: list[str] = field(default_factory=list)
    status: str = ""


@dataclass
class SRIOVNetworkDevice(_Resource):
    """An SR-IOV capable network interface on a node."""

    kind: ClassVar[str] = "SRIOVNetworkDevice"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SRIOVNetworkDeviceSpec = field(default_factory=SRIOVNetworkDeviceSpec)
    status: SRIOVNetworkDeviceStatus = field(default_factory=SRIOVNetworkDeviceStatus)


@dataclass
class USBDeviceStatus:
    vendor_id: str = ""
    product_id: str = ""
    node_name: str = ""
    resource_name: str = ""
    device_path: str = ""
    description: str = ""
    pci_address: str = ""
    enabled: bool = False


@dataclass
class USBDevice(_Resource):
    """A USB device attached to a node."""

    kind: ClassVar[str] = "USBDevice"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: USBDeviceStatus = field(default_factory=USBDeviceStatus)


@dataclass
class USBDeviceClaimStatus:
    node_name: str = ""
    pci_address: str = ""
    user_name: str = ""


@dataclass
class USBDeviceClaim(_Resource):
    """Reservation of a USB device for passthrough."""

    kind: ClassVar[str] = "USBDeviceClaim"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    status: USBDeviceClaimStatus = field(default_factory=USBDeviceClaimStatus)