from functools import lru_cache

from kubedeploy.config import get_settings
from kubedeploy.services.k8s.reconcile import ReconcileEngine
from kubedeploy.services.k8s.resource_api import KubernetesResourceApi


@lru_cache(maxsize=1)
def _get_resource_api() -> KubernetesResourceApi:
    return KubernetesResourceApi(get_settings())


@lru_cache(maxsize=1)
def _get_reconcile_engine() -> ReconcileEngine:
    return ReconcileEngine(_get_resource_api(), get_settings())


def get_reconcile_engine() -> ReconcileEngine:
    return _get_reconcile_engine()
