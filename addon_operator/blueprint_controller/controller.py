"""Blueprint Controller implementation.

A Blueprint declares the add-ons and cert-manager objects of a cluster. Each
kind of component is reconciled in turn, add-ons first so that the issuers
and certificates that follow can rely on cert-manager being declared.
"""

import logging

from addon_operator.config import ControllerConfig
from addon_operator.exceptions import ObjectNotFoundError
from addon_operator.manifest import BLUEPRINT_KIND, Blueprint, NamedResource
from addon_operator.reconciler import (
    AddonKind,
    CertificateKind,
    ClusterIssuerKind,
    ComponentReconciler,
    IssuerKind,
)
from addon_operator.store import Store

_LOGGER = logging.getLogger(__name__)


class BlueprintController:
    """Reconciles the components declared by a Blueprint."""

    def __init__(self, store: Store, config: ControllerConfig) -> None:
        """Initialize BlueprintController."""
        self.store = store
        self._config = config
        self._reconciler = ComponentReconciler(store, config)

    async def reconcile(self, namespace: str, name: str) -> Blueprint | None:
        """Reconcile every component kind of the Blueprint.

        Returns the parsed Blueprint, or None if it no longer exists.
        """
        resource_id = NamedResource(BLUEPRINT_KIND, namespace, name)
        try:
            doc = await self.store.get_object(resource_id)
        except ObjectNotFoundError:
            _LOGGER.debug("Blueprint %s no longer exists", resource_id)
            return None
        blueprint = Blueprint.parse_doc(doc)
        _LOGGER.info(
            "Reconciling blueprint %s (%d addons, %d issuers, %d cluster issuers, "
            "%d certificates)",
            resource_id,
            len(blueprint.addons),
            len(blueprint.issuers),
            len(blueprint.cluster_issuers),
            len(blueprint.certificates),
        )
        await self._reconciler.reconcile(
            AddonKind(self._config.system_namespace), blueprint, blueprint.addons
        )
        await self._reconciler.reconcile(IssuerKind(), blueprint, blueprint.issuers)
        await self._reconciler.reconcile(
            ClusterIssuerKind(), blueprint, blueprint.cluster_issuers
        )
        await self._reconciler.reconcile(
            CertificateKind(), blueprint, blueprint.certificates
        )
        return blueprint
