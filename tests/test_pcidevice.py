import pytest

from pcipassthru.api import (
    NODE_KEY_NAME,
    PARENT_SRIOV_NETWORK_DEVICE,
    ObjectMeta,
    PCIDevice,
    PCIDeviceInfo,
    PCIDeviceStatus,
    SRIOVNetworkDevice,
    SRIOVNetworkDeviceStatus,
)
from pcipassthru.clients import FactoryManager, NotFoundError, register_indexers
from pcipassthru.pcidevice import PCIDeviceHandler, identify_pci_bridge_devices

NODE = "TEST_NODE"


def _gpu():
    return PCIDeviceInfo(
        address="0000:08:00.0",
        vendor_id="10de",
        vendor_name="NVIDIA Corporation",
        product_id="20b0",
        product_name="GA100 [A100 SXM4 40GB]",
        class_id="03",
        class_name="Display controller",
        subclass_id="02",
        subclass_name="3D controller",
        driver="nvidia",
    )


def _nic(address, driver="ixgbe"):
    return PCIDeviceInfo(
        address=address,
        vendor_id="8086",
        vendor_name="Intel Corporation",
        product_id="1521",
        product_name="I350 Gigabit Network Connection",
        class_id="02",
        class_name="Network controller",
        subclass_id="00",
        subclass_name="Ethernet controller",
        driver=driver,
    )


def _bridge(address):
    return PCIDeviceInfo(address=address, class_id="06", subclass_id="04", driver="pcieport")


def _manager():
    management = FactoryManager()
    register_indexers(management)
    return management


def test_reconcile_creates_devices_and_skips_addresses():
    management = _manager()
    handler = PCIDeviceHandler(
        management.pci_devices,
        [_gpu(), _nic("0000:04:00.0"), _nic("0000:04:00.1")],
        management.sriov_network_devices,
        skip_addresses=["0000:04:00.1"],
    )
    handler.reconcile_pci_devices(NODE)

    gpu = management.pci_devices.get("TEST_NODE-000008000")
    assert gpu.status.address == "0000:08:00.0"
    assert gpu.status.resource_name == "nvidia.com/GA100_A100_SXM4_40GB"
    assert gpu.status.node_name == NODE
    assert gpu.metadata.labels == {NODE_KEY_NAME: NODE}
    assert "TEST_NODE-000004000" in management.pci_devices
    with pytest.raises(NotFoundError):
        management.pci_devices.get("TEST_NODE-000004001")
    assert len(management.pci_devices) == 2


def test_reconcile_sets_iommu_group_and_driver():
    management = _manager()
    existing = PCIDevice(
        metadata=ObjectMeta(name="TEST_NODE-000008000", labels={NODE_KEY_NAME: NODE}),
        status=PCIDeviceStatus(address="0000:08:00.0", kernel_driver_in_use="vfio-pci"),
    )
    management.pci_devices.create(existing)
    handler = PCIDeviceHandler(
        management.pci_devices,
        [_gpu()],
        management.sriov_network_devices,
        iommu_groups={"0000:08:00.0": 17},
    )
    handler.reconcile_pci_devices(NODE)
    gpu = management.pci_devices.get("TEST_NODE-000008000")
    assert gpu.status.iommu_group == "17"
    assert gpu.status.kernel_driver_in_use == "nvidia"
    assert gpu.status.class_id == "0302"


def test_reconcile_deletes_vanished_devices_of_this_node_only():
    management = _manager()
    management.pci_devices.create(
        PCIDevice(
            metadata=ObjectMeta(name="TEST_NODE-000009000", labels={NODE_KEY_NAME: NODE}),
            status=PCIDeviceStatus(address="0000:09:00.0", node_name=NODE),
        )
    )
    management.pci_devices.create(
        PCIDevice(
            metadata=ObjectMeta(name="other-000009000", labels={NODE_KEY_NAME: "other"}),
            status=PCIDeviceStatus(address="0000:09:00.0", node_name="other"),
        )
    )
    handler = PCIDeviceHandler(management.pci_devices, [_gpu()], management.sriov_network_devices)
    handler.reconcile_pci_devices(NODE)
    assert "TEST_NODE-000009000" not in management.pci_devices
    assert "other-000009000" in management.pci_devices
    assert "TEST_NODE-000008000" in management.pci_devices


def test_reconcile_labels_virtual_functions():
    management = _manager()
    management.sriov_network_devices.create(
        SRIOVNetworkDevice(
            metadata=ObjectMeta(name="TEST_NODE-eno1"),
            status=SRIOVNetworkDeviceStatus(vf_pci_devices=["TEST_NODE-000004100"]),
        )
    )
    handler = PCIDeviceHandler(
        management.pci_devices,
        [_nic("0000:04:10.0", driver="ixgbevf"), _nic("0000:04:00.0")],
        management.sriov_network_devices,
    )
    handler.reconcile_pci_devices(NODE)
    vf = management.pci_devices.get("TEST_NODE-000004100")
    pf = management.pci_devices.get("TEST_NODE-000004000")
    assert vf.metadata.labels[PARENT_SRIOV_NETWORK_DEVICE] == "TEST_NODE-eno1"
    assert PARENT_SRIOV_NETWORK_DEVICE not in pf.metadata.labels


def test_query_ownership_leaves_input_untouched():
    management = _manager()
    management.sriov_network_devices.create(
        SRIOVNetworkDevice(
            metadata=ObjectMeta(name="node-eno1"),
            status=SRIOVNetworkDeviceStatus(vf_pci_devices=["node-000004100"]),
        )
    )
    handler = PCIDeviceHandler(management.pci_devices, [], management.sriov_network_devices)
    base = {NODE_KEY_NAME: "node"}
    labels = handler.query_sriov_network_device_ownership(
        PCIDevice(metadata=ObjectMeta(name="node-000004100")), base
    )
    assert labels == {NODE_KEY_NAME: "node", PARENT_SRIOV_NETWORK_DEVICE: "node-eno1"}
    assert base == {NODE_KEY_NAME: "node"}


def test_query_ownership_without_index_raises():
    management = FactoryManager()
    handler = PCIDeviceHandler(management.pci_devices, [], management.sriov_network_devices)
    with pytest.raises(KeyError):
        handler.query_sriov_network_device_ownership(PCIDevice(metadata=ObjectMeta(name="x")), {})


def test_identify_pci_bridge_devices():
    devices = [_bridge("0000:00:01.0"), _gpu(), _bridge("0000:00:1c.0"), _nic("0000:04:00.0")]
    assert identify_pci_bridge_devices(devices) == ["0000:00:01.0", "0000:00:1c.0"]
    assert identify_pci_bridge_devices([_gpu()]) == []