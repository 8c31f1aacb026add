import pytest

from pcipassthru.api import (
    NODE_ENV_VAR_NAME,
    NODE_KEY_NAME,
    NVIDIA_DRIVER_NEEDED_KEY,
    ObjectMeta,
    SRIOVGPUDevice,
)
from pcipassthru.clients import CoreNode, NotFoundError, ObjectStore
from pcipassthru.nodes import check_and_update_node_labels, setup_node_objects


@pytest.fixture
def node_store():
    return ObjectStore(
        [
            CoreNode(metadata=ObjectMeta(name="node-with-gpu")),
            CoreNode(
                metadata=ObjectMeta(
                    name="node-without-gpu",
                    labels={NVIDIA_DRIVER_NEEDED_KEY: "true"},
                )
            ),
        ]
    )


@pytest.fixture
def gpu_store():
    return ObjectStore(
        [SRIOVGPUDevice(metadata=ObjectMeta(name="gpu1", labels={NODE_KEY_NAME: "node-with-gpu"}))]
    )


@pytest.mark.parametrize(
    "node_name, expected",
    [("node-with-gpu", "true"), ("node-without-gpu", "")],
)
def test_check_and_update_node_labels(node_store, gpu_store, node_name, expected):
    check_and_update_node_labels(node_name, node_store, node_store, gpu_store)
    node = node_store.get(node_name)
    assert node.metadata.labels.get(NVIDIA_DRIVER_NEEDED_KEY, "") == expected


def test_check_and_update_node_labels_missing_node(node_store, gpu_store):
    with pytest.raises(NotFoundError):
        check_and_update_node_labels("absent", node_store, node_store, gpu_store)


def test_setup_node_objects_creates_once():
    store = ObjectStore()
    setup_node_objects(store, "node1")
    setup_node_objects(store, "node1")
    assert [n.name for n in store.list()] == ["node1"]


def test_setup_node_objects_uses_environment(monkeypatch):
    monkeypatch.setenv(NODE_ENV_VAR_NAME, "env-node")
    store = ObjectStore()
    setup_node_objects(store)
    assert store.get("env-node").name == "env-node"