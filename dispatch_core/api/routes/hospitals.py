"""
Hospital routes for the dispatch API.

Hospitals publish their canonical profile and a live operational overlay;
dispatchers can preview a ranking for ad-hoc requirements.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from dispatch_core.api.dependencies import get_actor, get_state_machine, get_store, rate_limit
from dispatch_core.core.clock import utcnow
from dispatch_core.core.exceptions import Unauthorized, ValidationFailure
from dispatch_core.core.store import CaseStore
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.case import CaseRequirements
from dispatch_core.models.events import Actor, ActorRole
from dispatch_core.models.hospital import HospitalProfile, LiveOps

router = APIRouter()

PROFILE_ROLES = frozenset({ActorRole.HOSPITAL, ActorRole.ADMIN})


class RankPreviewRequest(BaseModel):
    requirements: CaseRequirements
    hospitals: Optional[List[Dict[str, Any]]] = None
    travel: Optional[Dict[str, Dict[str, Any]]] = None
    as_of: Optional[datetime] = None


def _require_hospital_writer(actor: Actor, hospital_id: str) -> None:
    if actor.role not in PROFILE_ROLES:
        raise Unauthorized(f"Role {actor.role.value} may not edit hospital profiles")
    if actor.role == ActorRole.HOSPITAL and actor.hospital_id != hospital_id:
        raise Unauthorized(f"Actor {actor.id} cannot edit hospital {hospital_id}")


async def _get_or_404(store: CaseStore, hospital_id: str) -> HospitalProfile:
    profile = await store.get_hospital(hospital_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Hospital not found")
    return profile


@router.get("")
async def list_hospitals(store: CaseStore = Depends(get_store)):
    """Get summaries of all registered hospitals."""
    hospitals = await store.list_hospitals()
    return [h.to_summary() for h in sorted(hospitals, key=lambda h: h.id)]


@router.get("/{hospital_id}")
async def get_hospital(hospital_id: str, store: CaseStore = Depends(get_store)):
    profile = await _get_or_404(store, hospital_id)
    data = profile.model_dump(mode="json")
    data["effective"] = profile.effective().model_dump(mode="json")
    return data


@router.put("/{hospital_id}", dependencies=[Depends(rate_limit)])
async def put_hospital(
    hospital_id: str,
    profile: HospitalProfile,
    actor: Actor = Depends(get_actor),
    store: CaseStore = Depends(get_store)
):
    """Create or replace a hospital's canonical profile."""
    _require_hospital_writer(actor, hospital_id)
    if profile.id != hospital_id:
        raise ValidationFailure(f"Profile id {profile.id} does not match {hospital_id}")
    stored = await store.put_hospital(profile)
    return stored.to_summary()


@router.put("/{hospital_id}/live", dependencies=[Depends(rate_limit)])
async def update_live_ops(
    hospital_id: str,
    live: LiveOps,
    actor: Actor = Depends(get_actor),
    store: CaseStore = Depends(get_store)
):
    """Replace the live operational overlay (beds, equipment, readiness, queue)."""
    _require_hospital_writer(actor, hospital_id)
    profile = await _get_or_404(store, hospital_id)
    if live.updated_at is None:
        live = live.model_copy(update={"updated_at": utcnow()})
    profile.live = live
    stored = await store.put_hospital(profile)
    return stored.to_summary()


@router.post("/rank")
async def preview_ranking(
    body: RankPreviewRequest,
    state_machine: CaseStateMachine = Depends(get_state_machine),
    store: CaseStore = Depends(get_store)
):
    """Rank hospitals for arbitrary requirements. Nothing is recorded."""
    hospitals = body.hospitals
    if hospitals is None:
        hospitals = await store.list_hospitals()
    ranking = state_machine.ranker.rank(
        body.requirements, hospitals, travel=body.travel, as_of=body.as_of
    )
    return {
        "summary": ranking.to_summary(),
        "ranking": ranking.model_dump(mode="json"),
    }
