"""
Crop cache management API routes.
"""
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.dependencies import get_cropper
from services.smart_cropper import SmartCropper

router = APIRouter()


class MaintenanceRequest(BaseModel):
    ttl_days: Optional[float] = None
    max_entries: Optional[int] = None


@router.get("/stats")
def cache_stats(cropper: SmartCropper = Depends(get_cropper)):
    """Entry counts, on-disk size and reuse estimate."""
    stats = cropper.get_cache_stats().to_dict()
    hit_rate = cropper.get_hit_rate()
    stats["estimated_hit_rate"] = hit_rate.estimated_hit_rate
    stats["max_access_count"] = hit_rate.max_access_count
    return stats


@router.post("/maintenance")
def run_maintenance(
    request: Optional[MaintenanceRequest] = None,
    cropper: SmartCropper = Depends(get_cropper),
):
    request = request or MaintenanceRequest()
    ttl = timedelta(days=request.ttl_days) if request.ttl_days is not None else None
    return cropper.perform_maintenance(ttl=ttl, max_entries=request.max_entries).to_dict()


@router.delete("/images")
def invalidate_image(
    image_url: str = Query(..., min_length=1),
    cropper: SmartCropper = Depends(get_cropper),
):
    return {"image_url": image_url, "deleted": cropper.invalidate_image(image_url)}


@router.delete("")
def clear_cache(cropper: SmartCropper = Depends(get_cropper)):
    return {"deleted": cropper.clear_cache()}
