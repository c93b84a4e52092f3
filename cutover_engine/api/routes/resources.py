from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from cutover_engine.api.container import get_orchestrator
from cutover_engine.api.schemas.deployment import (
    DeploymentCreateRequest,
    DeploymentResponse,
    ForceReleaseRequest,
    InstanceResponse,
    LockResponse,
    ResetCircuitRequest,
    ResourceStatusResponse,
    RollbackRequest,
)
from cutover_engine.core.factory import DeploymentRequestFactory

router = APIRouter(prefix="/resources", tags=["resources"])


@router.post("/{resource_id}/deployments", response_model=DeploymentResponse, status_code=202)
def create_deployment(
    resource_id: str,
    request: DeploymentCreateRequest,
    orchestrator=Depends(get_orchestrator),
):
    deployment_request = DeploymentRequestFactory.create(
        resource_id=resource_id,
        target_version=request.target_version,
        idempotency_key=request.idempotency_key,
    )

    handle = orchestrator.submit(deployment_request)

    return DeploymentResponse.from_domain(handle.record)


@router.get("/{resource_id}/deployments/{deployment_id}", response_model=DeploymentResponse)
def get_deployment(
    resource_id: str,
    deployment_id: str,
    orchestrator=Depends(get_orchestrator),
):
    record = orchestrator.get_record(deployment_id)

    if not record or record.resource_id != resource_id:
        raise HTTPException(status_code=404, detail="Deployment not found")

    return DeploymentResponse.from_domain(record)


@router.get("/{resource_id}/status", response_model=ResourceStatusResponse)
def get_status(
    resource_id: str,
    orchestrator=Depends(get_orchestrator),
):
    status = orchestrator.status(resource_id)

    return ResourceStatusResponse(
        resource_id=status.resource_id,
        state=status.state.value,
        current_version=status.current_version,
        active_instance=InstanceResponse.from_domain(status.active_instance),
        lock=LockResponse.from_domain(status.lock),
        last_deployment=(
            DeploymentResponse.from_domain(status.last_record) if status.last_record else None
        ),
        blocked=status.blocked,
        in_flight=status.in_flight,
        failure_counts=status.failure_counts,
    )


@router.post("/{resource_id}/rollback", response_model=DeploymentResponse, status_code=202)
def rollback(
    resource_id: str,
    request: Optional[RollbackRequest] = None,
    orchestrator=Depends(get_orchestrator),
):
    rollback_request = orchestrator.rollback_request(
        resource_id,
        idempotency_key=request.idempotency_key if request else None,
    )

    handle = orchestrator.submit(rollback_request)

    return DeploymentResponse.from_domain(handle.record)


@router.post("/{resource_id}/reset-circuit")
def reset_circuit(
    resource_id: str,
    request: Optional[ResetCircuitRequest] = None,
    orchestrator=Depends(get_orchestrator),
):
    version = request.version if request else None
    state = orchestrator.reset_circuit(resource_id, version)

    return {"status": "reset", "version": version, "failure_counts": state.failure_counts}


@router.post("/{resource_id}/force-release")
def force_release(
    resource_id: str,
    request: ForceReleaseRequest,
    orchestrator=Depends(get_orchestrator),
):
    record = orchestrator.force_release(resource_id, request.reason)

    return {
        "status": "released",
        "last_deployment": DeploymentResponse.from_domain(record) if record else None,
    }


@router.post("/{resource_id}/recover")
def recover(
    resource_id: str,
    orchestrator=Depends(get_orchestrator),
):
    record = orchestrator.recover(resource_id)

    return {
        "status": "recovered" if record else "nothing to recover",
        "deployment": DeploymentResponse.from_domain(record) if record else None,
    }
