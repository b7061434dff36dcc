"""
Crop decision API routes.
"""
import hashlib
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from api.dependencies import get_cropper
from domain.errors import ImageDataError, InvalidTargetSizeError
from domain.models import CropAggressiveness, CropResult, CropSettings, TargetSize
from services.image_snapshot import ImageSnapshot
from services.smart_cropper import SmartCropper

router = APIRouter()


class CropScoreResponse(BaseModel):
    strategy: str
    score: float
    confidence: float
    metrics: Dict[str, float]


class CropResponse(BaseModel):
    image_url: str
    x: float
    y: float
    width: float
    height: float
    confidence: float
    strategy: str
    from_cache: bool
    cache_key: Optional[str] = None
    processing_time_ms: float
    box: List[int]
    scores: List[CropScoreResponse] = []


def result_to_response(result: CropResult, image_url: str, snapshot: ImageSnapshot) -> CropResponse:
    """Convert a CropResult to the API response, with the pixel box in source coordinates."""
    coords = result.coordinates
    return CropResponse(
        image_url=image_url,
        x=coords.x,
        y=coords.y,
        width=coords.width,
        height=coords.height,
        confidence=coords.confidence,
        strategy=coords.strategy,
        from_cache=result.from_cache,
        cache_key=result.cache_key,
        processing_time_ms=result.processing_time.total_seconds() * 1000,
        box=list(SmartCropper.crop_box(coords, snapshot.width, snapshot.height)),
        scores=[
            CropScoreResponse(
                strategy=s.strategy,
                score=s.score,
                confidence=s.coordinates.confidence,
                metrics=s.metrics,
            )
            for s in result.scores
        ],
    )


@router.post("", response_model=CropResponse)
async def create_crop(
    file: UploadFile = File(...),
    width: float = Form(...),
    height: float = Form(...),
    image_url: Optional[str] = Form(None),
    aggressiveness: str = Form(CropAggressiveness.BALANCED.value),
    enable_rule_of_thirds: bool = Form(True),
    enable_entropy_analysis: bool = Form(True),
    enable_edge_detection: bool = Form(False),
    enable_center_weighting: bool = Form(True),
    max_processing_time_ms: int = Form(2000),
    cropper: SmartCropper = Depends(get_cropper),
):
    """Pick the crop for an uploaded image at the requested size."""
    target = TargetSize(width, height)
    try:
        target.validate()
    except InvalidTargetSizeError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    try:
        level = CropAggressiveness(aggressiveness)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown aggressiveness: {aggressiveness}")
    settings = CropSettings(
        aggressiveness=level,
        enable_rule_of_thirds=enable_rule_of_thirds,
        enable_entropy_analysis=enable_entropy_analysis,
        enable_edge_detection=enable_edge_detection,
        enable_center_weighting=enable_center_weighting,
        max_processing_time_ms=max_processing_time_ms,
    )

    content = await file.read()
    # Without a caller-supplied URL the upload is identified by its content
    identity = image_url or f"sha256:{hashlib.sha256(content).hexdigest()}"
    try:
        snapshot = await run_in_threadpool(ImageSnapshot.from_bytes, identity, content)
    except ImageDataError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        result = await run_in_threadpool(cropper.analyze_crop, snapshot, target, settings, None, identity)
    except InvalidTargetSizeError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return result_to_response(result, identity, snapshot)


@router.get("/metrics")
def crop_metrics(cropper: SmartCropper = Depends(get_cropper)):
    """Timing and outcome counters for crop requests served by this process."""
    return cropper.get_performance_stats()
