"""Device objects, in-memory stores, CRD manifests and reconcile handlers for PCI, SR-IOV, vGPU and USB passthrough."""

__version__ = "0.1.0"