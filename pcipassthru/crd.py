"""Custom resource definitions for the device resource types."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, TextIO

import yaml

from .api import (
    GROUP,
    VERSION,
    Node,
    PCIDevice,
    PCIDeviceClaim,
    SRIOVGPUDevice,
    SRIOVNetworkDevice,
    USBDevice,
    USBDeviceClaim,
    VGPUDevice,
)

_TEMPLATE_IF = '{{- if .Capabilities.APIVersions.Has "apiextensions.k8s.io/v1" -}}\n'
_TEMPLATE_ELSE = "{{- else -}}\n---\n"
_TEMPLATE_END = "{{- end -}}"


def _guess_plural(singular: str) -> str:
    if singular.endswith(("s", "x", "z", "ch", "sh")):
        return singular + "es"
    if singular.endswith("y") and len(singular) > 1 and singular[-2] not in "aeiou":
        return singular[:-1] + "ies"
    return singular + "s"


@dataclass(frozen=True)
class CRD:
    """Description of one custom resource type."""

    kind: str
    group: str = GROUP
    version: str = VERSION
    non_namespace: bool = False
    status: bool = True
    columns: tuple[tuple[str, str], ...] = ()

    @property
    def singular(self) -> str:
        return self.kind.lower()

    @property
    def plural(self) -> str:
        return _guess_plural(self.singular)

    @property
    def name(self) -> str:
        return f"{self.plural}.{self.group}"

    @property
    def scope(self) -> str:
        return "Cluster" if self.non_namespace else "Namespaced"

    def with_column(self, name: str, path: str) -> "CRD":
        """Return a copy with an extra printer column."""
        return replace(self, columns=self.columns + ((name, path),))

    def _names(self) -> dict[str, str]:
        return {
            "kind": self.kind,
            "listKind": f"{self.kind}List",
            "plural": self.plural,
            "singular": self.singular,
        }

    def to_manifest(self) -> dict[str, Any]:
        """The definition as an apiextensions.k8s.io/v1 document."""
        version: dict[str, Any] = {
            "name": self.version,
            "served": True,
            "storage": True,
            "schema": {
                "openAPIV3Schema": {
                    "type": "object",
                    "x-kubernetes-preserve-unknown-fields": True,
                }
            },
        }
        if self.columns:
            version["additionalPrinterColumns"] = [
                {"name": name, "type": "string", "jsonPath": path} for name, path in self.columns
            ]
        if self.status:
            version["subresources"] = {"status": {}}
        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": self.name},
            "spec": {
                "group": self.group,
                "names": self._names(),
                "scope": self.scope,
                "versions": [version],
            },
        }

    def _to_manifest_v1beta1(self) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "group": self.group,
            "names": self._names(),
            "scope": self.scope,
            "version": self.version,
            "versions": [{"name": self.version, "served": True, "storage": True}],
            "preserveUnknownFields": True,
        }
        if self.columns:
            spec["additionalPrinterColumns"] = [
                {"name": name, "type": "string", "JSONPath": path} for name, path in self.columns
            ]
        if self.status:
            spec["subresources"] = {"status": {}}
        return {
            "apiVersion": "apiextensions.k8s.io/v1beta1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": self.name},
            "spec": spec,
        }


def _cluster_crd(resource: type) -> CRD:
    return CRD(kind=resource.kind, non_namespace=True)


def list_crds() -> list[CRD]:
    """All custom resource definitions served by the controller."""
    return [
        _cluster_crd(PCIDevice)
        .with_column("Address", ".status.address")
        .with_column("Vendor Id", ".status.vendorId")
        .with_column("Device Id", ".status.deviceId")
        .with_column("Node Name", ".status.nodeName")
        .with_column("Description", ".status.description")
        .with_column("Kernel Driver In Use", ".status.kernelDriverInUse"),
        _cluster_crd(PCIDeviceClaim)
        .with_column("Address", ".spec.address")
        .with_column("Node Name", ".spec.nodeName")
        .with_column("User Name", ".spec.userName")
        .with_column("Kernel Driver Το Unbind", ".status.kernelDriverToUnbind")
        .with_column("Passthrough Enabled", ".status.passthroughEnabled"),
        _cluster_crd(SRIOVNetworkDevice)
        .with_column("Address", ".spec.address")
        .with_column("Node Name", ".spec.nodeName")
        .with_column("NumVFs", ".spec.numVFs")
        .with_column("VF Addresses", ".status.vfAddresses"),
        replace(_cluster_crd(Node), status=False),
        _cluster_crd(SRIOVGPUDevice)
        .with_column("Address", ".spec.address")
        .with_column("Node Name", ".spec.nodeName")
        .with_column("Enabled", ".spec.enabled")
        .with_column("VGPUDevices", ".status.vGPUDevices"),
        _cluster_crd(VGPUDevice)
        .with_column("Address", ".spec.address")
        .with_column("Node Name", ".spec.nodeName")
        .with_column("Enabled", ".spec.enabled")
        .with_column("UUID", ".status.uuid")
        .with_column("VGPUType", ".status.configureVGPUTypeName")
        .with_column("ParentGPUDevice", ".spec.parentGPUDeviceAddress"),
        _cluster_crd(USBDevice)
        .with_column("Vendor ID", ".status.vendorID")
        .with_column("Product ID", ".status.productID")
        .with_column("Node Name", ".status.nodeName")
        .with_column("Description", ".status.description")
        .with_column("Resource Name", ".status.resourceName")
        .with_column("PCI Address", ".status.pciAddress")
        .with_column("Enabled", ".status.enabled"),
        _cluster_crd(USBDeviceClaim)
        .with_column("Node Name", ".status.nodeName")
        .with_column("PCI Address", ".status.pciAddress")
        .with_column("User Name", ".status.userName"),
    ]


def objects(v1beta1: bool) -> list[dict[str, Any]]:
    """Manifests of every definition, in the v1beta1 or v1 form."""
    if v1beta1:
        return [crd._to_manifest_v1beta1() for crd in list_crds()]
    return [crd.to_manifest() for crd in list_crds()]


def _export(docs: list[dict[str, Any]]) -> str:
    return "---\n".join(
        yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, allow_unicode=True)
        for doc in docs
    )


def print_crds(out: TextIO) -> None:
    """Write both forms of the definitions, wrapped in a chart template switch."""
    out.write(
        _TEMPLATE_IF
        + _export(objects(False))
        + _TEMPLATE_ELSE
        + _export(objects(True))
        + _TEMPLATE_END
    )


def write_file(filename: str | os.PathLike[str]) -> None:
    """Write the definitions to ``filename``, creating its directory."""
    directory = os.path.dirname(os.fspath(filename))
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(filename, "w", encoding="utf-8") as out:
        print_crds(out)