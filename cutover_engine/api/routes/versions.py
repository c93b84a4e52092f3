from typing import List

from fastapi import APIRouter, Depends, Query

from cutover_engine.api.container import get_orchestrator
from cutover_engine.api.schemas.deployment import (
    VersionCreateRequest,
    VersionResponse,
)
from cutover_engine.core.factory import VersionFactory

router = APIRouter(prefix="/versions", tags=["versions"])


@router.post("", response_model=VersionResponse, status_code=201)
def register_version(
    request: VersionCreateRequest,
    orchestrator=Depends(get_orchestrator),
):
    version = VersionFactory.create(
        identifier=request.identifier,
        digest=request.digest,
        image_uri=request.image_uri,
    )

    stored = orchestrator.registry.register(version)

    return VersionResponse.from_domain(stored)


@router.get("", response_model=List[VersionResponse])
def list_versions(
    limit: int = Query(default=5, ge=1, le=100),
    orchestrator=Depends(get_orchestrator),
):
    return [VersionResponse.from_domain(v) for v in orchestrator.registry.list_recent(limit)]


@router.get("/{identifier:path}", response_model=VersionResponse)
def get_version(
    identifier: str,
    orchestrator=Depends(get_orchestrator),
):
    return VersionResponse.from_domain(orchestrator.registry.resolve(identifier))
