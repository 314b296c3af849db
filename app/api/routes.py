import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.dependencies import get_repository, require_internal_job_token
from app.config import get_settings
from app.jobs.reclassify_runner import run_reclassify
from app.jobs.scan_runner import run_scan, write_run_report
from app.models.schemas import (
    AuditOut,
    DatasetOut,
    ElectionCycleOut,
    JobRunOut,
    ReclassifyJobIn,
    ScanJobIn,
    TrendOut,
)
from app.services.errors import JobAlreadyRunningError
from app.services.pipeline import scope_tables_for
from src.polltrend.audit import find_suspicious_clusters
from src.polltrend.contracts import ElectionCycle
from src.polltrend.smoother import cycle_samples, rolling_average

router = APIRouter(prefix="/api/v1", tags=["v1"])
logger = logging.getLogger(__name__)


def _get_cycle(repo, year: int) -> ElectionCycle:
    cycle = repo.load_dataset().elections.get(year)
    if cycle is None:
        raise HTTPException(status_code=404, detail=f"election cycle not found: {year}")
    return cycle


@router.get("/elections", response_model=DatasetOut)
def get_elections(repo=Depends(get_repository)):
    return repo.load_dataset().to_dict()


@router.get("/elections/national", response_model=DatasetOut)
def get_national_elections(repo=Depends(get_repository)):
    return repo.load_dataset().national_only().to_dict()


@router.get("/elections/{year}", response_model=ElectionCycleOut)
def get_election(year: int, repo=Depends(get_repository)):
    return _get_cycle(repo, year).to_dict()


@router.get("/elections/{year}/trend", response_model=TrendOut)
def get_election_trend(
    year: int,
    window_days: float = Query(default=7, gt=0, le=365),
    scope: Literal["national", "regional", "all"] = Query(default="national"),
    repo=Depends(get_repository),
):
    cycle = _get_cycle(repo, year)
    samples = cycle_samples(cycle, scope)
    points = rolling_average(samples, window_days)
    return TrendOut(
        year=year,
        scope=scope,
        window_days=window_days,
        sample_count=len(samples),
        points=[point.to_dict() for point in points],
    )


@router.get("/elections/{year}/audit", response_model=AuditOut)
def get_election_audit(
    year: int,
    min_cluster: int = Query(default=3, ge=2, le=50),
    repo=Depends(get_repository),
):
    cycle = _get_cycle(repo, year)
    clusters = find_suspicious_clusters(cycle, tables=scope_tables_for(get_settings()), min_cluster=min_cluster)
    return AuditOut(year=year, min_cluster=min_cluster, clusters=[cluster.to_dict() for cluster in clusters])


@router.post("/jobs/run-scan", response_model=JobRunOut)
def run_scan_job(
    payload: ScanJobIn,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    settings = get_settings()
    try:
        result = run_scan(
            settings=settings,
            repository=repo,
            mode=payload.mode,
            start_id=payload.start_id,
            max_scan_length=payload.max_scan_length,
        )
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    write_run_report(settings.resolved_report_dir() / f"{result.summary.run_id}.json", result.to_dict())
    logger.info("run_scan_job run_id=%s status=%s", result.summary.run_id, result.summary.status)
    return JobRunOut(
        run_id=result.summary.run_id,
        status=result.summary.status,
        summary=result.summary.to_dict(),
        review_queue_count=len(result.review_queue),
    )


@router.post("/jobs/reclassify", response_model=JobRunOut)
def run_reclassify_job(
    payload: ReclassifyJobIn,
    _=Depends(require_internal_job_token),
    repo=Depends(get_repository),
):
    settings = get_settings()
    try:
        result = run_reclassify(settings=settings, repository=repo, refetch_weak=payload.refetch_weak)
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    write_run_report(settings.resolved_report_dir() / f"{result.summary.run_id}.json", result.to_dict())
    logger.info("run_reclassify_job run_id=%s status=%s", result.summary.run_id, result.summary.status)
    return JobRunOut(
        run_id=result.summary.run_id,
        status=result.summary.status,
        summary=result.summary.to_dict(),
        review_queue_count=len(result.review_queue),
    )
