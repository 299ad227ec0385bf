"""Evacuate PersistentVolumeClaims from a Kubernetes node before it is drained."""

__version__ = "0.1.0"
