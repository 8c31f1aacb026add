"""In-memory object stores and the shared set of stores used by the controllers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Iterable, Mapping, Optional

from .api import (
    SRIOV_FROM_VF,
    USB_DEVICE_PCI_ADDRESS,
    ObjectMeta,
    SRIOVNetworkDevice,
    USBDeviceClaim,
)


class NotFoundError(LookupError):
    """The requested object does not exist."""


class AlreadyExistsError(ValueError):
    """An object with the same name already exists."""


def matches_labels(labels: Mapping[str, str], selector: Optional[Mapping[str, str]]) -> bool:
    """True if every key/value pair of ``selector`` is present in ``labels``."""
    if not selector:
        return True
    return all(labels.get(key) == value for key, value in selector.items())


class ObjectStore:
    """A store of named objects that acts as both client and cache.

    Objects are copied on the way in and out, so callers never share
    state with the store.
    """

    def __init__(self, objects: Iterable[Any] = ()) -> None:
        self._objects: dict[str, Any] = {}
        self._indexers: dict[str, Callable[[Any], list[str]]] = {}
        for obj in objects:
            self.create(obj)

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, name: object) -> bool:
        return name in self._objects

    def _stored(self, name: str) -> Any:
        try:
            return self._objects[name]
        except KeyError:
            raise NotFoundError(f"{name!r} not found") from None

    def get(self, name: str) -> Any:
        return copy.deepcopy(self._stored(name))

    def list(self, selector: Optional[Mapping[str, str]] = None) -> list:
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if matches_labels(obj.metadata.labels, selector)
        ]

    def create(self, obj: Any) -> Any:
        name = obj.metadata.name
        if name in self._objects:
            raise AlreadyExistsError(f"{name!r} already exists")
        self._objects[name] = copy.deepcopy(obj)
        return copy.deepcopy(obj)

    def update(self, obj: Any) -> Any:
        name = obj.metadata.name
        self._stored(name)
        self._objects[name] = copy.deepcopy(obj)
        return copy.deepcopy(obj)

    def update_status(self, obj: Any) -> Any:
        if not hasattr(obj, "status"):
            raise ValueError(f"{type(obj).__name__} has no status")
        stored = self._stored(obj.metadata.name)
        stored.status = copy.deepcopy(obj.status)
        return copy.deepcopy(stored)

    def delete(self, name: str) -> None:
        self._stored(name)
        del self._objects[name]

    def add_indexer(self, name: str, func: Callable[[Any], list[str]]) -> None:
        self._indexers[name] = func

    def get_by_index(self, index_name: str, key: str) -> list:
        try:
            func = self._indexers[index_name]
        except KeyError:
            raise KeyError(f"index {index_name!r} does not exist") from None
        return [copy.deepcopy(obj) for obj in self._objects.values() if key in func(obj)]


@dataclass
class CoreNode:
    """A cluster node."""

    kind: ClassVar[str] = "Node"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class Pod:
    """A pod scheduled on a node."""

    kind: ClassVar[str] = "Pod"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_name: str = ""

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class PciHostDevice:
    pci_vendor_selector: str = ""
    resource_name: str = ""
    external_resource_provider: bool = False


@dataclass
class MediatedHostDevice:
    mdev_name_selector: str = ""
    resource_name: str = ""
    external_resource_provider: bool = False


@dataclass
class USBSelector:
    vendor: str = ""
    product: str = ""


@dataclass
class USBHostDevice:
    selectors: list[USBSelector] = field(default_factory=list)
    resource_name: str = ""
    external_resource_provider: bool = False


@dataclass
class PermittedHostDevices:
    pci_host_devices: list[PciHostDevice] = field(default_factory=list)
    mediated_devices: list[MediatedHostDevice] = field(default_factory=list)
    usb: list[USBHostDevice] = field(default_factory=list)


@dataclass
class KubeVirt:
    """The virtualisation configuration object listing permitted host devices."""

    kind: ClassVar[str] = "KubeVirt"
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    permitted_host_devices: Optional[PermittedHostDevices] = None

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class FactoryManager:
    """The stores shared between the controllers."""

    pci_devices: ObjectStore = field(default_factory=ObjectStore)
    pci_device_claims: ObjectStore = field(default_factory=ObjectStore)
    sriov_network_devices: ObjectStore = field(default_factory=ObjectStore)
    sriov_gpu_devices: ObjectStore = field(default_factory=ObjectStore)
    vgpu_devices: ObjectStore = field(default_factory=ObjectStore)
    usb_devices: ObjectStore = field(default_factory=ObjectStore)
    usb_device_claims: ObjectStore = field(default_factory=ObjectStore)
    nodes: ObjectStore = field(default_factory=ObjectStore)
    core_nodes: ObjectStore = field(default_factory=ObjectStore)
    pods: ObjectStore = field(default_factory=ObjectStore)
    kubevirts: ObjectStore = field(default_factory=ObjectStore)


def sriov_device_from_vf(obj: SRIOVNetworkDevice) -> list[str]:
    """Index an SR-IOV network device by the PCI device names of its VFs."""
    return list(obj.status.vf_pci_devices)


def usb_device_claim_from_pci_address(obj: USBDeviceClaim) -> list[str]:
    """Index a USB device claim by the PCI address of its device."""
    return [obj.status.pci_address]


def register_indexers(management: FactoryManager) -> None:
    """Install the lookup indexes the controllers rely on."""
    management.sriov_network_devices.add_indexer(SRIOV_FROM_VF, sriov_device_from_vf)
    management.usb_device_claims.add_indexer(USB_DEVICE_PCI_ADDRESS, usb_device_claim_from_pci_address)