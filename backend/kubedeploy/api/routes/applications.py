import yaml
from fastapi import APIRouter, Depends

from kubedeploy.dependencies import get_reconcile_engine
from kubedeploy.schemas.application import (
    ApplicationDescriptor,
    ApplicationRef,
    OperationResult,
    RenderedManifests,
)
from kubedeploy.services.k8s.reconcile import ReconcileEngine


router = APIRouter(prefix="/applications", tags=["applications"])


@router.put("", response_model=OperationResult, summary="Create or update an application")
async def upsert_application(
    payload: ApplicationDescriptor,
    engine: ReconcileEngine = Depends(get_reconcile_engine),
) -> OperationResult:
    await engine.upsert_application(payload)
    return OperationResult(ok=True, message=f"deployed {payload.label}", endpoint=engine.endpoint(payload))


@router.delete("", response_model=OperationResult, summary="Remove an application")
async def delete_application(
    payload: ApplicationRef,
    engine: ReconcileEngine = Depends(get_reconcile_engine),
) -> OperationResult:
    await engine.delete_application(payload)
    return OperationResult(ok=True, message=f"deleted {payload.label}")


@router.post("/render", response_model=RenderedManifests, summary="Render manifests without touching the cluster")
async def render_application(
    payload: ApplicationDescriptor,
    engine: ReconcileEngine = Depends(get_reconcile_engine),
) -> RenderedManifests:
    d = engine.validate(payload)
    text = yaml.safe_dump_all(engine.templates.manifests(d), sort_keys=False)
    return RenderedManifests(namespace=d.target_namespace, name=d.resource_name, yaml=text)
