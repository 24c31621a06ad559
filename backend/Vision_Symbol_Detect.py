#!/usr/bin/env python3
"""
Vision detector client: asks an OpenAI-compatible chat model for symbol candidates
- Label-first prompt (box the component, not its text label)
- Pooled requests.Session with retries, optional on-disk response cache
- Raw reply goes through Symbol_Box_Refine.parse_detector_response
"""

import os
import json
import base64
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import requests
from dotenv import load_dotenv

from Symbol_Box_Refine import DetectorPayload, parse_detector_response, payload_or_default

load_dotenv()

logger = logging.getLogger("vision-detector")

MAX_IMAGE_BYTES = 20 * 1024 * 1024
SUPPORTED_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}


class VisionDetectorError(RuntimeError):
    """Detector not configured, or the vision endpoint failed."""


def validate_image_for_analysis(image_bytes: bytes, mime_type: str) -> Tuple[bool, Optional[str]]:
    if len(image_bytes or b"") > MAX_IMAGE_BYTES:
        return False, "Image too large (max 20MB)"
    if (mime_type or "").lower() not in SUPPORTED_MIME_TYPES:
        return False, "Unsupported image format"
    return True, None


class VisionSymbolDetector:
    """
    Collaborator that turns image bytes into a DetectorPayload.
    Only the HTTP call lives here; every field of the reply is treated as untrusted.
    """

    def __init__(self):
        # Keys / model
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self.model = os.getenv("VISION_MODEL", "gpt-4o")
        self.url = os.getenv("VISION_URL", "https://api.openai.com/v1/chat/completions")
        self.timeout = int(os.getenv("VISION_TIMEOUT", "30"))
        self.max_tokens = int(os.getenv("VISION_MAX_TOKENS", "2500"))

        # Cache is opt-in
        cache_dir = os.getenv("VISION_CACHE_DIR", "")
        self.cache_dir = Path(cache_dir) if cache_dir else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        # HTTP Session
        self.session = requests.Session()
        adapter = requests.adapters.HTTPAdapter(pool_connections=4, pool_maxsize=4, max_retries=3)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    # -------------------- public entrypoints --------------------
    def detect(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> DetectorPayload:
        raw = self.call_vision(image_bytes, mime_type)
        return payload_or_default(parse_detector_response(raw))

    def health(self) -> Dict[str, Any]:
        if not self.api_key:
            return {"available": False, "error": "OPENAI_API_KEY not configured"}
        return {"available": True, "model": self.model}

    def call_vision(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
        if not self.api_key:
            raise VisionDetectorError("OPENAI_API_KEY not set")

        cache_file = self._cache_file(image_bytes)
        if cache_file is not None and cache_file.exists():
            try:
                with open(cache_file, "r", encoding="utf-8") as f:
                    return json.load(f)["content"]
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Ignoring unreadable cache entry %s: %s", cache_file.name, e)

        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode()}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": self.model,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": self._build_detection_prompt()},
                    {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
                ],
            }],
            "temperature": 0.1,
            "max_tokens": self.max_tokens,
        }

        try:
            r = self.session.post(self.url, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise VisionDetectorError(f"vision request failed: {e}") from e
        if not r.ok:
            logger.error("Vision HTTP error %s head=%s", r.status_code, r.text[:600])
            raise VisionDetectorError(f"vision endpoint returned HTTP {r.status_code}")

        try:
            j = r.json()
            content = j["choices"][0]["message"]["content"] or ""
            finish = j["choices"][0].get("finish_reason")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise VisionDetectorError(f"unexpected vision response shape: {e}") from e

        logger.info("Vision reply model=%s len=%d finish=%s usage=%s",
                    self.model, len(content), finish, j.get("usage"))
        if finish == "length":
            logger.warning("Vision reply hit max_tokens=%d; symbol list may be truncated", self.max_tokens)

        if cache_file is not None:
            try:
                with open(cache_file, "w", encoding="utf-8") as f:
                    json.dump({"content": content}, f)
            except OSError as e:
                logger.warning("Failed writing vision cache: %s", e)
        return content

    # -------------------- helpers --------------------
    def _cache_file(self, image_bytes: bytes) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        model_safe = (self.model or "model").replace("/", "_").replace("\\", "_").replace(":", "_")
        return self.cache_dir / f"{hashlib.md5(image_bytes).hexdigest()}_{model_safe}.json"

    def _build_detection_prompt(self) -> str:
        return (
            "Analyze this mechanical/HVAC/plumbing blueprint and locate every labeled component.\n\n"
            "FOR EACH LABEL (FCU, AHU, EF, SF, P, PUMP, V, VALVE, M, MOTOR, VFD, ...):\n"
            "1) Follow its leader line or arrow to the component it points at.\n"
            "2) Box the component body at the arrow end, NOT the text label.\n\n"
            "COORDINATES (percent of the full image, origin top-left):\n"
            "- x,y are the CENTER of the component.\n"
            "- width,height are the component span, normally 3-15%.\n"
            "- Left half means x < 50, top half means y < 50; re-check if this disagrees with the image.\n\n"
            "CATEGORY: one of hvac, plumbing, electrical, mechanical, structural, other.\n"
            "CONFIDENCE: 50-100 (lower it when the box placement is estimated).\n\n"
            "Return STRICT JSON only, no markdown:\n"
            "{\n"
            '  "symbols": [ {"name": "FCU-1", "description": "...", "confidence": 90, "category": "hvac",\n'
            '                "coordinates": {"x": 25.0, "y": 18.0, "width": 7.0, "height": 6.0}} ],\n'
            '  "summary": "Found N components",\n'
            '  "overallConfidence": 88\n'
            "}\n"
        )
