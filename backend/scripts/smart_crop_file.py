"""Pick a smart crop for a local image file.

Usage:
    python -m scripts.smart_crop_file IMAGE --width 1080 --height 1920 [--edges] [--aggressiveness balanced] [--output out.jpg]

Prints the chosen crop as JSON. With --output, also writes the cropped and
resized image. Decisions are cached in the crop cache database unless
--no-cache is given.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from PIL import Image, ImageOps

from domain.errors import ImageDataError, InvalidTargetSizeError
from domain.models import CropAggressiveness, CropSettings, TargetSize
from services.image_snapshot import ImageSnapshot, register_heif_opener
from services.smart_cropper import SmartCropper

logger = logging.getLogger("smart_crop_file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Choose a content-aware crop for an image.")
    parser.add_argument("image", help="Path to the source image.")
    parser.add_argument("--width", type=float, required=True, help="Target width in pixels.")
    parser.add_argument("--height", type=float, required=True, help="Target height in pixels.")
    parser.add_argument(
        "--aggressiveness",
        choices=[level.value for level in CropAggressiveness],
        default=CropAggressiveness.BALANCED.value,
    )
    parser.add_argument("--edges", action="store_true", help="Enable the edge-detection analyzer.")
    parser.add_argument("--no-entropy", action="store_true", help="Disable the entropy analyzer.")
    parser.add_argument("--no-thirds", action="store_true", help="Disable the rule-of-thirds analyzer.")
    parser.add_argument("--no-center", action="store_true", help="Disable the center-weighted analyzer.")
    parser.add_argument("--timeout-ms", type=int, default=2000)
    parser.add_argument("--no-cache", action="store_true", help="Skip the crop cache.")
    parser.add_argument("--output", default=None, help="Write the cropped image here.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    if not logger.handlers:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = build_parser().parse_args(argv)
    register_heif_opener()

    path = Path(args.image)
    settings = CropSettings(
        aggressiveness=CropAggressiveness(args.aggressiveness),
        enable_rule_of_thirds=not args.no_thirds,
        enable_entropy_analysis=not args.no_entropy,
        enable_edge_detection=args.edges,
        enable_center_weighting=not args.no_center,
        max_processing_time_ms=args.timeout_ms,
    )
    target = TargetSize(args.width, args.height)

    try:
        snapshot = ImageSnapshot.from_path(path)
    except ImageDataError as exc:
        logger.error("%s", exc)
        return 2

    cropper = SmartCropper(cache_enabled=not args.no_cache)
    try:
        result = cropper.analyze_crop(snapshot, target, settings)
    except InvalidTargetSizeError as exc:
        logger.error("%s", exc)
        return 2
    finally:
        cropper.close()

    coords = result.coordinates
    payload = {
        "image": str(path),
        "target": target.label(),
        "crop": coords.to_dict(),
        "box": list(cropper.crop_box(coords, snapshot.width, snapshot.height)),
        "from_cache": result.from_cache,
        "processing_time_ms": round(result.processing_time.total_seconds() * 1000, 1),
    }
    print(json.dumps(payload, indent=2))

    if args.output:
        with Image.open(path) as img:
            cropped = cropper.apply_crop(ImageOps.exif_transpose(img), coords, target)
            if Path(args.output).suffix.lower() in (".jpg", ".jpeg"):
                cropped = cropped.convert("RGB")
            cropped.save(args.output)
        logger.info("Wrote %s", args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
