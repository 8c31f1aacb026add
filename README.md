# pcipassthru

`pcipassthru` keeps device objects for the PCI devices, SR-IOV network cards,
SR-IOV GPUs, vGPUs and USB devices of a cluster node in step with what is
found on that node. It also handles the claims that hand a device to a
virtual machine for passthrough: binding PCI devices to `vfio-pci` and adding
devices to the KubeVirt list of permitted host devices.

## Modules

- `pcipassthru.api` — the device object types: `PCIDevice`, `PCIDeviceClaim`,
  `SRIOVNetworkDevice`, `SRIOVGPUDevice`, `VGPUDevice`, `USBDevice`,
  `USBDeviceClaim` and `Node`, with their spec and status dataclasses.
  `PCIDeviceInfo` describes a PCI device as found on the host.
  `new_pci_device_for_hostname`, `pci_device_name_for_hostname`,
  `resource_name`, `description` and `trim_resource_name_if_needed` build the
  names and descriptions stored on the objects.
- `pcipassthru.clients` — `ObjectStore`, an in-memory store. It copies objects
  on the way in and out, filters them by label selector (`matches_labels`),
  and looks them up through named indexes (`add_indexer`, `get_by_index`).
  Missing objects raise `NotFoundError` and duplicate names raise
  `AlreadyExistsError`. The module also holds the `CoreNode`, `Pod` and
  `KubeVirt` types, and the permitted host device types (`PciHostDevice`,
  `MediatedHostDevice`, `USBHostDevice`, `USBSelector`,
  `PermittedHostDevices`). `FactoryManager` bundles one store per kind, and
  `register_indexers` installs the indexes the controllers use.
- `pcipassthru.crd` — `CRD`, `list_crds`, `objects`, `print_crds` and
  `write_file` for the custom resource definitions of every device kind,
  with their printer columns.
- `pcipassthru.pcidevice` — `PCIDeviceHandler.reconcile_pci_devices` creates,
  refreshes and deletes `PCIDevice` objects for a node from a list of
  `PCIDeviceInfo`. It skips given addresses and labels VFs with the SR-IOV
  network device that owns them. `identify_pci_bridge_devices` returns the
  addresses of PCI bridges so that they can be skipped.
- `pcipassthru.pcideviceclaim` — `PCIDeviceClaimHandler` binds claimed devices
  to `vfio-pci` and unbinds them again by writing the driver files under
  `/sys/bus/pci/drivers` (the root can be changed). It restores the original
  driver, unbinds orphaned devices, and permits devices in the KubeVirt
  configuration (`reconcile_kubevirt_cr`). `get_orphaned_pci_devices` finds
  devices bound to `vfio-pci` that have no claim.
- `pcipassthru.gpudevice` — `GPUHandler.reconcile_sriov_gpu_setup` creates
  the discovered SR-IOV GPUs and deletes the stored GPUs that are no longer
  present. GPUs that already have a PCI device claim are skipped.
- `pcipassthru.vgpudevice` — `VGPUHandler` reconciles vGPU objects and keeps
  those whose parent GPU is enabled. `enable_vgpu` creates a mediated device
  through the `create` file under `/sys/class/mdev_bus`, and the disabled
  siblings of that vGPU are then requeued.
- `pcipassthru.usbdevice` — `USBDeviceHandler.reconcile` turns a list of
  `LocalUSBDevice` into `USBDevice` objects to create, update and delete.
  Devices that are still enabled are kept. `USBDeviceClaimHandler` adds
  claimed devices to the permitted USB devices and enables them, and undoes
  both when a claim is removed.
- `pcipassthru.nodes` — `check_and_update_node_labels` sets or clears the
  `sriovgpu.harvesterhci.io/driver-needed` label on a node. It sets the label
  when the node has SR-IOV GPUs and clears it when it has none.
  `setup_node_objects` creates the per-node `Node` object; the node name
  defaults to the `NODE_NAME` environment variable.
- `pcipassthru.nodecleanup` — `NodeCleanupHandler.on_remove` deletes a removed
  node's PCI device claims and PCI devices. It strips the claim finalizer
  before deleting a claim.

## Naming

A PCI device's object name is the node name followed by its address, with
colons and dots removed:

```python
from pcipassthru.api import pci_device_name_for_hostname

pci_device_name_for_hostname("0000:3f:06.3", "testnode1")
# 'testnode1-00003f063'
```

A resource name has the form `vendor.com/PRODUCT`. It is shortened when the
device plugin socket path would exceed 108 characters. `VIRTUAL_FUNCTION` is
shortened to `VF` first. If the path is still too long, the product is
replaced by the device ID:

```python
from pcipassthru.api import trim_resource_name_if_needed

trim_resource_name_if_needed(
    "broadcom.com",
    "NETXTREME_II_BCM57810_10_GIGABIT_ETHERNET_VIRTUAL_FUNCTION",
    "16af",
)
# 'broadcom.com/NETXTREME_II_BCM57810_10_GIGABIT_ETHERNET_VF'
```

USB resource names carry the `kubevirt.io/` prefix:

```python
from pcipassthru.usbdevice import resource_name

resource_name("test-node-0951-1666-001002")
# 'kubevirt.io/test-node-0951-1666-001002'
```

## CRD manifests

`print_crds` writes one templated YAML document to a text stream. The
document holds the `apiextensions.k8s.io/v1` definitions with a `v1beta1`
fallback. `write_file` writes the same document to a path and creates its
directory first:

```python
import sys

from pcipassthru.crd import print_crds, write_file

print_crds(sys.stdout)
write_file("charts/templates/crds.yaml")
```

## What it does not do

- It has no command and no long-running controller. The handlers are plain
  objects, and the caller invokes them.
- It does not scan the host itself. PCI devices, IOMMU groups, SR-IOV GPUs,
  vGPUs and USB devices are handed to the handlers by the caller. USB devices
  come through a `walk_usb_devices` callable.
- It does not talk to a cluster API server. Every object lives in an
  `ObjectStore` in memory.
- It does not serve device plugins. `USBDeviceClaimHandler` only starts and
  stops plugin objects that a given `plugin_factory` supplies. USB
  descriptions come from a `describe` callable, which by default gives
  `vendor:product` in hex.

## Requirements

- Python 3.10 or later.
- PyYAML.
- The driver binding in `pcipassthru.pcideviceclaim` and the vGPU creation in
  `pcipassthru.vgpudevice` write kernel sysfs files. They need a Linux host
  and the privileges to write those files.