"""Generic reconciliation of Blueprint components."""

from .components import (
    ComponentKind,
    AddonKind,
    IssuerKind,
    ClusterIssuerKind,
    CertificateKind,
)
from .controller import ComponentReconciler, ensure_namespace

__all__ = [
    "ComponentKind",
    "AddonKind",
    "IssuerKind",
    "ClusterIssuerKind",
    "CertificateKind",
    "ComponentReconciler",
    "ensure_namespace",
]
