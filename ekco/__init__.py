"""Reconcile logic for an embedded Kubernetes cluster and its Rook-Ceph storage."""

__version__ = "0.1.0"