"""Enrichment and shared-record endpoints."""

import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from ..enrichment.orchestrator import EnrichmentOrchestrator
from ..security.auth import CallerContext, get_caller
from .dependencies import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_LOOKUP_IDS = 100


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class EnrichRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input: str = Field(max_length=2048)
    category_hints: List[str] = Field(default_factory=list, alias="categoryHints")


class EnrichResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_id: str = Field(serialization_alias="toolId")
    cached: bool
    tool: dict


class LookupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_ids: List[str] = Field(alias="toolIds", max_length=MAX_LOOKUP_IDS)


class LookupResponse(BaseModel):
    tools: Dict[str, dict]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/enrich", response_model=EnrichResponse, response_model_by_alias=True)
async def enrich_tool(
    body: EnrichRequest,
    caller: CallerContext = Depends(get_caller),
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator),
):
    """Resolve a URL or tool name to a shared enriched record."""
    result = await orchestrator.enrich(
        body.input,
        body.category_hints,
        caller_id=caller.caller_id,
        caller_verified=caller.verified,
    )
    return EnrichResponse(tool_id=result.tool_id, cached=result.cached, tool=result.record.to_dict())


@router.get("/tools/{tool_id}")
async def get_tool(
    tool_id: str,
    caller: CallerContext = Depends(get_caller),
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator),
):
    """Fetch one shared record by ToolId."""
    record = await orchestrator.store.get(tool_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Tool not found")
    return record.to_dict()


@router.post("/tools/lookup", response_model=LookupResponse)
async def lookup_tools(
    body: LookupRequest,
    caller: CallerContext = Depends(get_caller),
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator),
):
    """Batch-fetch shared records; unknown ids are omitted."""
    records = await orchestrator.store.get_many(body.tool_ids)
    return {"tools": {tool_id: record.to_dict() for tool_id, record in records.items()}}


@router.get("/usage")
async def get_usage(
    caller: CallerContext = Depends(get_caller),
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator),
):
    """The caller's enrichment usage in the current minute and day."""
    return {
        "callerId": caller.caller_id,
        "usage": await orchestrator.ledger.usage(caller.caller_id),
    }
