import pytest

from pcipassthru.api import (
    MDEV_SUPPORT_TYPES_DIR,
    NODE_KEY_NAME,
    PARENT_SRIOV_GPU_DEVICE_LABEL,
    ObjectMeta,
    SRIOVGPUDevice,
    SRIOVGPUDeviceSpec,
    VGPUDevice,
    VGPUDeviceSpec,
    VGPUDeviceStatus,
    VGPUStatus,
)
from pcipassthru.clients import NotFoundError, ObjectStore
from pcipassthru.vgpudevice import VGPUError, VGPUHandler, contains_vgpu

NODE = "fakeNode"


def _vgpu(name, address, parent, enabled=False, type_name="", labels=None):
    return VGPUDevice(
        metadata=ObjectMeta(name=name, labels=labels if labels is not None else {NODE_KEY_NAME: NODE}),
        spec=VGPUDeviceSpec(
            node_name=NODE,
            address=address,
            parent_gpu_device_address=parent,
            enabled=enabled,
            vgpu_type_name=type_name,
        ),
    )


def _missing():
    return _vgpu("fakeNode-000009004", "0000:09:00.4", "0000:09:00.0")


def _found_present():
    return _vgpu("fakeNode-000010004", "0000:10:00.4", "0000:10:00.0", True, "NVIDIA A2-4C")


def _new():
    return _vgpu("fakeNode-000011004", "0000:11:00.4", "0000:11:00.0")


def test_reconcile_vgpu_setup():
    store = ObjectStore([_missing()])
    handler = VGPUHandler(NODE, store, ObjectStore())
    handler.reconcile_vgpu_setup([_found_present(), _new()])

    with pytest.raises(NotFoundError):
        store.get("fakeNode-000009004")
    obj = store.get("fakeNode-000010004")
    assert obj.spec.enabled is True
    assert obj.spec.vgpu_type_name == "NVIDIA A2-4C"
    assert len(store.list({NODE_KEY_NAME: NODE})) == 2


def test_reconcile_keeps_vgpu_with_enabled_parent():
    store = ObjectStore([_missing()])
    gpus = ObjectStore(
        [
            SRIOVGPUDevice(
                metadata=ObjectMeta(name="fakeNode-000009000"),
                spec=SRIOVGPUDeviceSpec(address="0000:09:00.0", node_name=NODE, enabled=True),
            )
        ]
    )
    VGPUHandler(NODE, store, gpus).reconcile_vgpu_setup([_new()])
    assert "fakeNode-000009004" in store
    assert "fakeNode-000011004" in store


def test_reconcile_refreshes_status_of_existing():
    existing = _found_present()
    existing.status = VGPUDeviceStatus(vgpu_status=VGPUStatus.ENABLED, uuid="stale")
    store = ObjectStore([existing])
    discovered = _found_present()
    discovered.status = VGPUDeviceStatus(available_types={"NVIDIA A2-4C": "nvidia-745"})
    VGPUHandler(NODE, store, ObjectStore()).reconcile_vgpu_setup([discovered])
    obj = store.get("fakeNode-000010004")
    assert obj.status.uuid == ""
    assert obj.status.vgpu_status == VGPUStatus.DISABLED
    assert obj.status.available_types == {"NVIDIA A2-4C": "nvidia-745"}


def test_contains_vgpu():
    items = [_missing(), _new()]
    assert contains_vgpu(_new(), items).spec.address == "0000:11:00.4"
    assert contains_vgpu(_found_present(), items) is None


@pytest.mark.parametrize("enabled", [True, False])
def test_is_parent_gpu_enabled(enabled):
    gpus = ObjectStore(
        [
            SRIOVGPUDevice(
                metadata=ObjectMeta(name="fakeNode-000010000"),
                spec=SRIOVGPUDeviceSpec(address="0000:10:00.0", node_name=NODE, enabled=enabled),
            )
        ]
    )
    handler = VGPUHandler(NODE, ObjectStore(), gpus)
    assert handler.is_parent_gpu_enabled("0000:10:00.0") is enabled
    assert handler.is_parent_gpu_enabled("0000:99:00.0") is False


def _sibling(name, enabled):
    labels = {NODE_KEY_NAME: NODE, PARENT_SRIOV_GPU_DEVICE_LABEL: "fakeNode-000010000"}
    return _vgpu(name, "0000:10:00.5", "0000:10:00.0", enabled, labels=labels)


def test_reconcile_disabled_vgpu_status_enqueues_disabled_siblings():
    me = _sibling("fakeNode-000010004", False)
    store = ObjectStore([me, _sibling("fakeNode-000010005", False), _sibling("fakeNode-000010006", True)])
    queued = []
    handler = VGPUHandler(NODE, store, ObjectStore(), enqueue=queued.append)
    result = handler.reconcile_disabled_vgpu_status(me)
    assert result.name == "fakeNode-000010004"
    assert queued == ["fakeNode-000010005"]


def test_reconcile_disabled_vgpu_status_ignores_other_node():
    other = _sibling("x", False)
    other.spec.node_name = "elsewhere"
    queued = []
    store = ObjectStore([_sibling("fakeNode-000010005", False)])
    handler = VGPUHandler(NODE, store, ObjectStore(), enqueue=queued.append)
    assert handler.reconcile_disabled_vgpu_status(other) is other
    assert queued == []
    assert handler.reconcile_disabled_vgpu_status(None) is None


def test_enable_vgpu_writes_uuid(tmp_path):
    vgpu = _found_present()
    vgpu.status.available_types = {"NVIDIA A2-4C": "nvidia-745"}
    create = tmp_path / "0000:10:00.4" / MDEV_SUPPORT_TYPES_DIR / "nvidia-745" / "create"
    create.parent.mkdir(parents=True)
    create.write_text("")
    store = ObjectStore([vgpu])
    handler = VGPUHandler(NODE, store, ObjectStore(), mdev_bus_class_root=str(tmp_path))

    result = handler.enable_vgpu(vgpu)
    assert result.status.vgpu_status == VGPUStatus.ENABLED
    assert result.status.uuid == create.read_text()
    assert len(result.status.uuid) == 36
    assert store.get(vgpu.name).status.uuid == result.status.uuid


def test_enable_vgpu_unknown_type(tmp_path):
    vgpu = _found_present()
    handler = VGPUHandler(NODE, ObjectStore([vgpu]), ObjectStore(), mdev_bus_class_root=str(tmp_path))
    with pytest.raises(VGPUError, match="not available"):
        handler.enable_vgpu(vgpu)


def test_enable_vgpu_missing_create_file(tmp_path):
    vgpu = _found_present()
    vgpu.status.available_types = {"NVIDIA A2-4C": "nvidia-745"}
    store = ObjectStore([vgpu])
    handler = VGPUHandler(NODE, store, ObjectStore(), mdev_bus_class_root=str(tmp_path))
    with pytest.raises(VGPUError, match="create file"):
        handler.enable_vgpu(vgpu)
    assert store.get(vgpu.name).status.uuid == ""