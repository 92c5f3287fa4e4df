"""
Admin router - stage mapping and metric definition management.

Wired to:
- StageMappingStore for validated CRUD

Validation failures return 422 with every problem listed; unknown IDs 404.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from flowmetrics.models.mappings import (
    MetricDefinitionInput,
    MetricDefinitionUpdate,
    StageMappingInput,
)
from flowmetrics.services.mapping_store import (
    MappingNotFoundError,
    MappingValidationError,
    StageMappingStore,
)
from flowmetrics.storage import get_storage
from flowmetrics.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class CommentRequest(BaseModel):
    """Update a mapping's narrative comment."""

    metric_comment: Optional[str] = Field(None, description="Free text; empty clears it")


class ReorderRequest(BaseModel):
    """New display order of metric definitions."""

    metric_ids: list[int] = Field(..., min_length=1)


def get_mapping_store() -> StageMappingStore:
    return StageMappingStore(get_storage())


def _validation_error(e: MappingValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"message": "Validation failed", "errors": e.errors})


# ============================================================================
# Stage mappings
# ============================================================================


@router.get("/mappings")
async def list_mappings():
    """List all stage mappings."""
    mappings = get_mapping_store().list_mappings()
    return {"success": True, "data": [m.model_dump(mode="json") for m in mappings]}


@router.post("/mappings")
async def upsert_mapping(request: StageMappingInput):
    """
    Create the mapping for a canonical stage, or replace the existing one.
    """
    logger.info("mapping_upsert_request", canonical_stage=request.canonical_stage)
    try:
        mapping = get_mapping_store().upsert_mapping(request)
    except MappingValidationError as e:
        raise _validation_error(e)
    return {"success": True, "data": mapping.model_dump(mode="json")}


@router.get("/mappings/{mapping_id}")
async def get_mapping(mapping_id: int):
    try:
        mapping = get_mapping_store().get_mapping(mapping_id)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "data": mapping.model_dump(mode="json")}


@router.put("/mappings/{mapping_id}")
async def update_mapping(mapping_id: int, request: StageMappingInput):
    logger.info("mapping_update_request", mapping_id=mapping_id)
    try:
        mapping = get_mapping_store().update_mapping(mapping_id, request)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MappingValidationError as e:
        raise _validation_error(e)
    return {"success": True, "data": mapping.model_dump(mode="json")}


@router.put("/mappings/{mapping_id}/comment")
async def update_mapping_comment(mapping_id: int, request: CommentRequest):
    try:
        mapping = get_mapping_store().update_comment(mapping_id, request.metric_comment)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "data": mapping.model_dump(mode="json")}


@router.delete("/mappings/{mapping_id}")
async def delete_mapping(mapping_id: int):
    """
    Delete a mapping. Refused while an active metric definition uses it.
    """
    logger.info("mapping_delete_request", mapping_id=mapping_id)
    try:
        get_mapping_store().delete_mapping(mapping_id)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MappingValidationError as e:
        raise HTTPException(status_code=409, detail={"message": "Mapping in use", "errors": e.errors})
    return {"success": True, "data": {"mapping_id": mapping_id, "deleted": True}}


# ============================================================================
# Metric definitions
# ============================================================================


@router.get("/metrics")
async def list_definitions(active_only: bool = False):
    """List metric definitions in display order."""
    definitions = get_mapping_store().list_definitions(active_only=active_only)
    return {"success": True, "data": [d.model_dump(mode="json") for d in definitions]}


@router.post("/metrics")
async def create_definition(request: MetricDefinitionInput):
    logger.info("definition_create_request", metric_key=request.metric_key)
    try:
        definition = get_mapping_store().create_definition(request)
    except MappingValidationError as e:
        raise _validation_error(e)
    return {"success": True, "data": definition.model_dump(mode="json")}


@router.post("/metrics/reorder")
async def reorder_definitions(request: ReorderRequest):
    try:
        definitions = get_mapping_store().reorder_definitions(request.metric_ids)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MappingValidationError as e:
        raise _validation_error(e)
    return {"success": True, "data": [d.model_dump(mode="json") for d in definitions]}


@router.put("/metrics/{metric_id}")
async def update_definition(metric_id: int, request: MetricDefinitionUpdate):
    """Update a definition; set is_active=false to deactivate it."""
    logger.info("definition_update_request", metric_id=metric_id)
    try:
        definition = get_mapping_store().update_definition(metric_id, request)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MappingValidationError as e:
        raise _validation_error(e)
    return {"success": True, "data": definition.model_dump(mode="json")}


@router.delete("/metrics/{metric_id}")
async def delete_definition(metric_id: int):
    """Delete a definition. Its stage mapping is kept."""
    logger.info("definition_delete_request", metric_id=metric_id)
    try:
        get_mapping_store().delete_definition(metric_id)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "data": {"metric_id": metric_id, "deleted": True}}
