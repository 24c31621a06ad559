#!/usr/bin/env python3
"""
Blueprint Symbol Refiner: snaps vision-model symbol boxes onto the drawn symbol
- Box clamping into sane percentage ranges (center-based, % of image)
- Sobel edge-density recentering, multi-scale retry, darkest-pixel fallback
- Confidence unit normalization + fixed category taxonomy
- Result-style parsing of the raw detector response
"""

import io
import os
import re
import csv
import json
import math
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from concurrent.futures import ThreadPoolExecutor, as_completed

import numpy as np
import pandas as pd
import cv2
from PIL import Image
from dotenv import load_dotenv

load_dotenv()

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger("symbol-refiner")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
RETRY_SCALES: Tuple[float, ...] = (0.08, 0.12)   # tight crop first, then wider
MIN_CROP_PX, MAX_CROP_PX = 64, 256
LABEL_BAND_FRACTION = 0.25                       # text labels sit above the symbol
EDGE_PERCENTILE = 0.82

DEFAULT_CENTER_PCT = 50.0
DEFAULT_SIDE_PCT = 7.0
MIN_SIDE_PCT, MAX_SIDE_PCT = 3.0, 12.0
DEFAULT_IMAGE_SIZE = (1000, 1000)

CATEGORIES = ("hydraulic", "pneumatic", "mechanical", "electrical", "other")

UNREADABLE_NAME = "?"
UNREADABLE_DESCRIPTION = "Label unreadable; symbol located from image geometry"
DEFAULT_SUMMARY = "Analysis completed"
PARSE_FAILED_SUMMARY = "Unable to parse detailed analysis, but blueprint was processed"
PARSE_FAILED_CONFIDENCE = 50

CSV_COLUMNS = ["Name", "Category", "Description", "Confidence", "X", "Y", "Width", "Height"]


class RegionExtractionError(RuntimeError):
    """Crop falls outside the decoded image, or the bytes do not decode."""


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SanitizedBox:
    x: float
    y: float
    width: float
    height: float

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.x, self.y, self.width, self.height))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class ImageMetadata:
    # None / 0 means "unknown"; resolved against the configured default
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class PixelRegion:
    left: int
    top: int
    size: int
    pixels: np.ndarray  # size x size grayscale, float64, private copy


class RecenterMethod(str, Enum):
    EDGES = "edges"
    DARKNESS = "darkness"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class RecenterOutcome:
    box: SanitizedBox
    method: RecenterMethod
    scale: Optional[float] = None


def _opt_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return None


@dataclass(frozen=True)
class RawCandidateSymbol:
    """One detector proposal. Every field is optional; defaults are applied in one place (refine_symbol)."""

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    confidence: Any = None
    coordinates: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_dict(d: Any) -> "RawCandidateSymbol":
        if not isinstance(d, dict):
            return RawCandidateSymbol()
        coords = d.get("coordinates")
        return RawCandidateSymbol(
            name=_opt_str(d.get("name")),
            description=_opt_str(d.get("description")),
            category=_opt_str(d.get("category")),
            confidence=d.get("confidence"),
            coordinates=coords if isinstance(coords, dict) else None,
        )


@dataclass(frozen=True)
class RefinedSymbol:
    name: str
    description: str
    confidence: float
    category: str
    coordinates: SanitizedBox
    refinement: RecenterMethod = RecenterMethod.UNCHANGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "confidence": self.confidence,
            "category": self.category,
            "coordinates": self.coordinates.to_dict(),
            "refinement": self.refinement.value,
        }


@dataclass(frozen=True)
class RefinementResult:
    symbols: List[RefinedSymbol]
    total_symbols: int
    summary: str
    confidence: float          # overall, 0..100
    processing_time_ms: int
    analysis_timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbols": [s.to_dict() for s in self.symbols],
            "total_symbols": self.total_symbols,
            "summary": self.summary,
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "analysis_timestamp": self.analysis_timestamp,
        }


# -----------------------------------------------------------------------------
# Detector response parsing (ParseOk / ParseFailed, explicit default path)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DetectorPayload:
    symbols: List[Any]
    summary: Optional[str] = None
    overall_confidence: Any = None


@dataclass(frozen=True)
class ParseOk:
    payload: DetectorPayload


@dataclass(frozen=True)
class ParseFailed:
    reason: str


ParseResult = Union[ParseOk, ParseFailed]

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")
_BARE_JSON = re.compile(r"\{[\s\S]*\}")


def parse_detector_response(text: Any) -> ParseResult:
    """Pull the JSON object out of a model reply (fenced block first, then the outer {...} span)."""
    if not isinstance(text, str) or not text.strip():
        return ParseFailed("empty response")

    m = _FENCED_JSON.search(text)
    if m:
        blob = m.group(1)
    else:
        m = _BARE_JSON.search(text)
        if not m:
            return ParseFailed("no JSON object found in response")
        blob = m.group(0)

    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        return ParseFailed(f"invalid JSON: {e.msg} (pos {e.pos})")
    if not isinstance(data, dict):
        return ParseFailed("top-level JSON is not an object")

    symbols = data.get("symbols")
    summary = data.get("summary")
    overall = data.get("overallConfidence", data.get("overall_confidence"))
    return ParseOk(DetectorPayload(
        symbols=symbols if isinstance(symbols, list) else [],
        summary=summary if isinstance(summary, str) else None,
        overall_confidence=overall,
    ))


def payload_or_default(result: ParseResult) -> DetectorPayload:
    if isinstance(result, ParseOk):
        return result.payload
    logger.warning("Detector response unusable (%s); continuing with empty symbol list", result.reason)
    return DetectorPayload(symbols=[], summary=PARSE_FAILED_SUMMARY, overall_confidence=PARSE_FAILED_CONFIDENCE)


# -----------------------------------------------------------------------------
# Small helpers (numbers, boxes)
# -----------------------------------------------------------------------------
def _num(value: Any) -> Optional[float]:
    """Finite float or None. Accepts numeric strings like '85' or '85%'."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%").strip()
        if not value:
            return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def _field(coords: Dict[str, Any], key: str, default: float) -> float:
    v = _num(coords.get(key))
    return default if v is None else v


def clamp_box(coords: Any) -> SanitizedBox:
    """x,y in [0,100]; width,height in [3,12]. Missing or junk fields take the 50% / 7% defaults."""
    if isinstance(coords, SanitizedBox):
        coords = coords.to_dict()
    safe = coords if isinstance(coords, dict) else {}
    return SanitizedBox(
        x=_clamp(_field(safe, "x", DEFAULT_CENTER_PCT), 0.0, 100.0),
        y=_clamp(_field(safe, "y", DEFAULT_CENTER_PCT), 0.0, 100.0),
        width=_clamp(_field(safe, "width", DEFAULT_SIDE_PCT), MIN_SIDE_PCT, MAX_SIDE_PCT),
        height=_clamp(_field(safe, "height", DEFAULT_SIDE_PCT), MIN_SIDE_PCT, MAX_SIDE_PCT),
    )


# -----------------------------------------------------------------------------
# Confidence + category normalization
# -----------------------------------------------------------------------------
def normalize_symbol_confidence(value: Any) -> float:
    """Per-symbol confidence -> [0,1]. Anything above 1 is read as a percentage."""
    v = _num(value)
    if v is None or v < 0:
        return 0.0
    if v > 1:
        v = v / 100.0
    return _clamp(v, 0.0, 1.0)


def normalize_overall_confidence(value: Any) -> float:
    """Overall confidence -> [0,100]. Anything at or below 1 is read as a fraction."""
    v = _num(value)
    if v is None or v < 0:
        return 0.0
    if v <= 1:
        v = v * 100.0
    return _clamp(v, 0.0, 100.0)


_CATEGORY_ALIASES: Dict[str, str] = {}
for _target, _aliases in (
    ("hydraulic", ("hydraulic", "plumbing", "valve", "pump", "water")),
    ("pneumatic", ("pneumatic", "compressed_air")),
    ("mechanical", ("mechanical", "hvac", "ventilation", "fan", "structural")),
    ("electrical", ("controls", "control", "electrical", "electric", "vfd", "motor")),
    ("other", ("other", "unknown")),
):
    for _alias in _aliases:
        _CATEGORY_ALIASES[_alias] = _target

# checked in order, first hit wins
_CATEGORY_HINTS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("hvac", "vent", "fan"), "mechanical"),
    (("plumb", "hydra", "pump", "valve"), "hydraulic"),
    (("elect", "control", "motor"), "electrical"),
)


def map_category(raw: Any) -> str:
    text = (_opt_str(raw) or "").strip().lower()
    if not text:
        return "other"
    direct = _CATEGORY_ALIASES.get(text)
    if direct:
        return direct
    for needles, target in _CATEGORY_HINTS:
        if any(n in text for n in needles):
            return target
    return "other"


# -----------------------------------------------------------------------------
# Image decoding collaborator (Pillow)
# -----------------------------------------------------------------------------
@lru_cache(maxsize=4)
def _decode_gray(image_bytes: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(image_bytes)) as im:
        gray = np.array(im.convert("L"), dtype=np.uint8)
    gray.setflags(write=False)  # shared between worker threads
    return gray


class PillowImageDecoder:
    """Metadata + grayscale crops from encoded image bytes. Crops never pad: out-of-bounds raises."""

    def metadata(self, image_bytes: bytes) -> ImageMetadata:
        with Image.open(io.BytesIO(image_bytes)) as im:
            w, h = im.size
        return ImageMetadata(width=int(w), height=int(h))

    def extract_gray(self, image_bytes: bytes, left: int, top: int, width: int, height: int) -> np.ndarray:
        try:
            gray = _decode_gray(bytes(image_bytes))
        except (OSError, ValueError) as e:
            raise RegionExtractionError(f"image decode failed: {e}") from e
        H, W = gray.shape[:2]
        if left < 0 or top < 0 or width <= 0 or height <= 0 or left + width > W or top + height > H:
            raise RegionExtractionError(
                f"crop ({left},{top}) {width}x{height} outside {W}x{H} image"
            )
        return gray[top:top + height, left:left + width].astype(np.float64)

    def release(self) -> None:
        """Drop decoded pages; called once a refine() pass is done with the image."""
        _decode_gray.cache_clear()


# -----------------------------------------------------------------------------
# Localization (pure functions of box, crop, metadata)
# -----------------------------------------------------------------------------
def crop_window(box: SanitizedBox, meta: ImageMetadata, scale: float) -> Tuple[int, int, int]:
    """(left, top, side) of the square crop around the box center, kept inside the image."""
    img_w, img_h = int(meta.width), int(meta.height)
    cx = (box.x / 100.0) * img_w
    cy = (box.y / 100.0) * img_h
    size = int(_clamp(_round_half_up(max(img_w, img_h) * scale), MIN_CROP_PX, MAX_CROP_PX))
    left = max(0, min(img_w - size, _round_half_up(cx - size / 2)))
    top = max(0, min(img_h - size, _round_half_up(cy - size / 2)))
    return left, top, size


def extract_region(box: SanitizedBox, image_bytes: bytes, meta: ImageMetadata, scale: float, decoder) -> PixelRegion:
    left, top, size = crop_window(box, meta, scale)
    pixels = np.asarray(decoder.extract_gray(image_bytes, left, top, size, size), dtype=np.float64)
    if pixels.shape != (size, size):
        raise RegionExtractionError(f"decoder returned {pixels.shape}, expected {(size, size)}")
    return PixelRegion(left=left, top=top, size=size, pixels=pixels)


def _label_band_rows(size: int) -> int:
    return int(size * LABEL_BAND_FRACTION)


def gradient_magnitude(pixels: np.ndarray) -> np.ndarray:
    """|Gx| + |Gy| from 3x3 Sobel; the 1-pixel border stays zero."""
    gx = cv2.Sobel(pixels, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(pixels, cv2.CV_64F, 0, 1, ksize=3)
    mag = np.abs(gx) + np.abs(gy)
    mag[0, :] = 0.0
    mag[-1, :] = 0.0
    mag[:, 0] = 0.0
    mag[:, -1] = 0.0
    return mag


def percentile_cutoff(values: np.ndarray, q: float = EDGE_PERCENTILE) -> float:
    flat = np.sort(values, axis=None)
    if flat.size == 0:
        return 0.0
    idx = min(flat.size - 1, int(math.floor(flat.size * q)))
    return float(flat[idx])


def _box_from_pixel(px: float, py: float, box: SanitizedBox, meta: ImageMetadata) -> SanitizedBox:
    # not clamped: a non-finite result is dropped by the pipeline
    return SanitizedBox(
        x=(px / meta.width) * 100.0,
        y=(py / meta.height) * 100.0,
        width=box.width,
        height=box.height,
    )


def locate_by_edges(region: PixelRegion, box: SanitizedBox, meta: ImageMetadata) -> Optional[SanitizedBox]:
    """Recenter on the magnitude-weighted centroid of the strongest edges, or None without edge signal."""
    mag = gradient_magnitude(region.pixels)
    mag[:_label_band_rows(region.size), :] = 0.0

    cutoff = percentile_cutoff(mag)
    weights = np.where(mag >= cutoff, mag, 0.0)
    total = float(weights.sum())
    if total <= 0:
        return None

    ys, xs = np.indices(weights.shape)
    cx = float((xs * weights).sum()) / total
    cy = float((ys * weights).sum()) / total
    return _box_from_pixel(region.left + cx, region.top + cy, box, meta)


def locate_by_darkness(region: PixelRegion, box: SanitizedBox, meta: ImageMetadata) -> Optional[SanitizedBox]:
    """Recenter on the centroid of the darkest pixels below the label band."""
    band = _label_band_rows(region.size)
    visible = region.pixels[band:, :]
    if visible.size == 0:
        return None
    darkest = visible.min()
    ys, xs = np.nonzero(visible == darkest)
    if xs.size == 0:
        return None
    return _box_from_pixel(region.left + float(xs.mean()), region.top + band + float(ys.mean()), box, meta)


def recenter_box(
    box: SanitizedBox,
    image_bytes: bytes,
    meta: ImageMetadata,
    decoder,
    scales: Sequence[float] = RETRY_SCALES,
) -> RecenterOutcome:
    """
    Edges at each scale in order (first hit wins) -> darkest pixels on the last crop
    we managed to read -> the clamped box unchanged. Never raises.
    """
    last_region: Optional[PixelRegion] = None
    last_scale: Optional[float] = None

    for scale in scales:
        try:
            region = extract_region(box, image_bytes, meta, scale, decoder)
        except RegionExtractionError as e:
            logger.debug("Region extraction failed at scale %.2f: %s", scale, e)
            continue
        except Exception as e:
            logger.warning("Region extraction error at scale %.2f: %s", scale, e)
            continue
        last_region, last_scale = region, scale
        try:
            found = locate_by_edges(region, box, meta)
        except Exception as e:
            logger.warning("Edge localization error at scale %.2f: %s", scale, e)
            continue
        if found is not None:
            return RecenterOutcome(box=found, method=RecenterMethod.EDGES, scale=scale)

    if last_region is not None:
        try:
            found = locate_by_darkness(last_region, box, meta)
        except Exception as e:
            logger.warning("Darkness fallback error: %s", e)
            found = None
        if found is not None:
            return RecenterOutcome(box=found, method=RecenterMethod.DARKNESS, scale=last_scale)

    return RecenterOutcome(box=clamp_box(box), method=RecenterMethod.UNCHANGED)


# -----------------------------------------------------------------------------
# Debug overlay
# -----------------------------------------------------------------------------
_OVERLAY_COLORS = {
    RecenterMethod.EDGES: (0, 200, 0),
    RecenterMethod.DARKNESS: (255, 200, 0),
    RecenterMethod.UNCHANGED: (255, 0, 0),
}


def _overlay_debug(image_bytes: bytes, symbols: List[RefinedSymbol], out_path: Path):
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            img = np.array(im.convert("RGB"))
    except (OSError, ValueError) as e:
        logger.warning("Failed decoding image for debug overlay: %s", e)
        return
    H, W = img.shape[:2]
    for i, s in enumerate(symbols):
        b = s.coordinates
        x0 = int((b.x - b.width / 2) / 100.0 * W); x1 = int((b.x + b.width / 2) / 100.0 * W)
        y0 = int((b.y - b.height / 2) / 100.0 * H); y1 = int((b.y + b.height / 2) / 100.0 * H)
        color = _OVERLAY_COLORS[s.refinement]
        cv2.rectangle(img, (x0, y0), (x1, y1), color, 2)
        cv2.putText(img, f"{i+1}:{s.name}", (x0, max(0, y0 - 6)), cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1, cv2.LINE_AA)
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(out_path), cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
    except Exception as e:
        logger.warning("Failed saving debug overlay: %s", e)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------
class SymbolRefiner:
    """
    Refines one image's detector candidates.
    Collaborators are injected; anything not passed in comes from the environment.
    """

    # -------------------- init & config --------------------
    def __init__(
        self,
        decoder=None,
        default_image_size: Optional[Tuple[int, int]] = None,
        max_workers: Optional[int] = None,
        scales: Sequence[float] = RETRY_SCALES,
        debug_overlay: Optional[bool] = None,
    ):
        self.decoder = decoder or PillowImageDecoder()

        # Used when the caller cannot tell us the pixel size of the image
        if default_image_size is None:
            default_image_size = (
                int(os.getenv("DEFAULT_IMAGE_WIDTH", str(DEFAULT_IMAGE_SIZE[0]))),
                int(os.getenv("DEFAULT_IMAGE_HEIGHT", str(DEFAULT_IMAGE_SIZE[1]))),
            )
        dw, dh = default_image_size
        if dw <= 0 or dh <= 0:
            raise ValueError(f"default image size must be positive, got {dw}x{dh}")
        self.default_image_size = ImageMetadata(width=int(dw), height=int(dh))

        self.scales = tuple(scales)
        self.max_workers = max_workers if max_workers is not None else int(os.getenv("MAX_WORKERS", "4"))

        # Perf / debug
        self.debug_timing = os.getenv("DEBUG_TIMING", "true").lower() == "true"
        if debug_overlay is None:
            debug_overlay = os.getenv("DEBUG_OVERLAY", "false").lower() == "true"
        self.debug_overlay = debug_overlay
        self.debug_dir = Path(os.getenv("DEBUG_DIR", "debug"))

    # -------------------- public entrypoints --------------------
    def resolve_metadata(self, image_bytes: bytes, metadata: Optional[ImageMetadata] = None) -> ImageMetadata:
        """Caller dimensions first, then the decoded image, then the configured default (per dimension)."""
        w = metadata.width if metadata is not None else None
        h = metadata.height if metadata is not None else None
        if not (w and w > 0) or not (h and h > 0):
            try:
                decoded = self.decoder.metadata(image_bytes)
                w = w if w and w > 0 else decoded.width
                h = h if h and h > 0 else decoded.height
            except Exception as e:
                logger.warning("Image metadata unavailable (%s); assuming %dx%d", e,
                               self.default_image_size.width, self.default_image_size.height)
        return ImageMetadata(
            width=int(w) if w and w > 0 else self.default_image_size.width,
            height=int(h) if h and h > 0 else self.default_image_size.height,
        )

    def refine_symbol(self, candidate: RawCandidateSymbol, image_bytes: bytes, meta: ImageMetadata) -> RefinedSymbol:
        clamped = clamp_box(candidate.coordinates)
        outcome = recenter_box(clamped, image_bytes, meta, self.decoder, self.scales)
        return self._assemble(candidate, outcome)

    def refine(
        self,
        candidates: Optional[Sequence[Any]],
        image_bytes: bytes,
        metadata: Optional[ImageMetadata] = None,
        summary: Optional[str] = None,
        overall_confidence: Any = None,
    ) -> RefinementResult:
        t0 = time.time()
        raw = [c if isinstance(c, RawCandidateSymbol) else RawCandidateSymbol.from_dict(c) for c in (candidates or [])]
        meta = self.resolve_metadata(image_bytes, metadata)

        # Parallel per-candidate work, results placed back by input index
        results_by_idx: Dict[int, RefinedSymbol] = {}
        if raw:
            pool_size = max(1, min(self.max_workers, len(raw), 8))
            try:
                with ThreadPoolExecutor(max_workers=pool_size) as pool:
                    idx_by_fut = {
                        pool.submit(self.refine_symbol, cand, image_bytes, meta): idx
                        for idx, cand in enumerate(raw)
                    }
                    for fut in as_completed(list(idx_by_fut)):
                        idx = idx_by_fut[fut]
                        try:
                            results_by_idx[idx] = fut.result()
                        except Exception:
                            logger.exception("Symbol %d refinement crashed; keeping clamped box", idx)
                            results_by_idx[idx] = self._assemble(
                                raw[idx], RecenterOutcome(clamp_box(raw[idx].coordinates), RecenterMethod.UNCHANGED)
                            )
            finally:
                # Decoded pages must not outlive the request
                release = getattr(self.decoder, "release", None)
                if callable(release):
                    release()

        ordered = [results_by_idx[i] for i in range(len(raw))]
        symbols = [s for s in ordered if s.coordinates.is_finite()]
        if len(symbols) != len(ordered):
            logger.warning("Dropped %d symbol(s) with non-finite coordinates", len(ordered) - len(symbols))

        if self.debug_overlay and symbols:
            _overlay_debug(image_bytes, symbols, self.debug_dir / "debug_symbols.png")

        dur_ms = int((time.time() - t0) * 1000)
        if self.debug_timing:
            methods = {m.value: sum(1 for s in symbols if s.refinement is m) for m in RecenterMethod}
            logger.info("Refined %d/%d symbols on %dx%d image in %dms %s",
                        len(symbols), len(raw), meta.width, meta.height, dur_ms, methods)

        return RefinementResult(
            symbols=symbols,
            total_symbols=len(symbols),
            summary=(summary.strip() if isinstance(summary, str) and summary.strip() else DEFAULT_SUMMARY),
            confidence=normalize_overall_confidence(overall_confidence),
            processing_time_ms=dur_ms,
            analysis_timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def refine_payload(self, payload: DetectorPayload, image_bytes: bytes,
                       metadata: Optional[ImageMetadata] = None) -> RefinementResult:
        return self.refine(
            payload.symbols, image_bytes, metadata,
            summary=payload.summary, overall_confidence=payload.overall_confidence,
        )

    # -------------------- helpers --------------------
    def _assemble(self, candidate: RawCandidateSymbol, outcome: RecenterOutcome) -> RefinedSymbol:
        name = (candidate.name or "").strip() or UNREADABLE_NAME
        description = UNREADABLE_DESCRIPTION if name == UNREADABLE_NAME else (candidate.description or "")
        return RefinedSymbol(
            name=name,
            description=description,
            confidence=normalize_symbol_confidence(candidate.confidence),
            category=map_category(candidate.category),
            coordinates=outcome.box,
            refinement=outcome.method,
        )


# -----------------------------------------------------------------------------
# CSV export
# -----------------------------------------------------------------------------
def safe_filename(value: Optional[str]) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "blueprint"


def symbols_to_csv(symbols: Sequence[Union[RefinedSymbol, Dict[str, Any]]]) -> str:
    rows = []
    for s in symbols:
        d = s.to_dict() if isinstance(s, RefinedSymbol) else (s if isinstance(s, dict) else {})
        c = d.get("coordinates") or {}
        rows.append({
            "Name": d.get("name", ""),
            "Category": d.get("category", ""),
            "Description": d.get("description", ""),
            "Confidence": d.get("confidence", ""),
            "X": c.get("x", ""),
            "Y": c.get("y", ""),
            "Width": c.get("width", ""),
            "Height": c.get("height", ""),
        })
    df = pd.DataFrame(rows, columns=CSV_COLUMNS)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")

# -----------------------------------------------------------------------------
# End module
# -----------------------------------------------------------------------------
