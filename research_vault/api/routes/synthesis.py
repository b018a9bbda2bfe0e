"""Synthesis routes.

Endpoints:
    POST /v1/synthesis/scan            Run one synthesis pass now
    GET  /v1/synthesis/jobs            Recent synthesis jobs (in-memory history)
    GET  /v1/synthesis/jobs/{job_id}   One job
"""

from fastapi import APIRouter, HTTPException

from research_vault.service import get_vault
from research_vault.synthesis.schemas import ScanResult, SynthesisJob

router = APIRouter(prefix="/synthesis", tags=["synthesis"])


@router.post("/scan", response_model=ScanResult)
def run_scan() -> ScanResult:
    # Plain def: FastAPI runs it in the threadpool, the scan does blocking I/O
    return get_vault().synthesize()


@router.get("/jobs", response_model=list[SynthesisJob])
async def list_jobs() -> list[SynthesisJob]:
    return get_vault().synthesis.list_jobs()


@router.get("/jobs/{job_id}", response_model=SynthesisJob)
async def get_job(job_id: str) -> SynthesisJob:
    job = get_vault().synthesis.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Synthesis job not found: {job_id}")
    return job
