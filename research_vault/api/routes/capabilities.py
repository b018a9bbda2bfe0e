"""Capability profile routes."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from research_vault.capabilities.schemas import CapabilityProfile, CapabilitySummary
from research_vault.service import get_vault

router = APIRouter(prefix="/capabilities", tags=["capabilities"])


@router.get("", response_model=list[CapabilitySummary])
async def list_capabilities(
    tags: Optional[str] = Query(None, description="Comma-separated tags; orders by least-privilege match"),
) -> list[CapabilitySummary]:
    registry = get_vault().registry
    summaries = registry.list_summaries()
    if not tags:
        return summaries
    by_id = {s.id: s for s in summaries}
    return [by_id[p.id] for p in registry.lookup(tags)]


@router.get("/{profile_id}", response_model=CapabilityProfile)
async def get_capability(profile_id: str) -> CapabilityProfile:
    profile = get_vault().registry.get(profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Capability profile not found: {profile_id}")
    return profile
