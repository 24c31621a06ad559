# debug_run.py
import os, json, logging, sys, time
from pathlib import Path
from Symbol_Box_Refine import SymbolRefiner, parse_detector_response, payload_or_default

logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
logger = logging.getLogger("debug")

def main(image_path, detections_path=None):
    t0 = time.time()
    logger.info("=== DEBUG START === image=%s detections=%s", image_path, detections_path)
    image_bytes = Path(image_path).read_bytes()

    # sanity: show env the refiner will read
    for k in ("DEFAULT_IMAGE_WIDTH", "DEFAULT_IMAGE_HEIGHT", "MAX_WORKERS", "DEBUG_DIR", "VISION_MODEL"):
        logger.info("env %s=%s", k, os.getenv(k, ""))

    if detections_path:
        parsed = parse_detector_response(Path(detections_path).read_text(encoding="utf-8"))
        payload = payload_or_default(parsed)
    else:
        # no saved reply: ask the vision model like the server does
        from Vision_Symbol_Detect import VisionSymbolDetector
        payload = VisionSymbolDetector().detect(image_bytes, "image/png")

    ref = SymbolRefiner(debug_overlay=True)
    out = ref.refine_payload(payload, image_bytes).to_dict()
    logger.info("RESULT candidates=%d symbols=%d", len(payload.symbols), out["total_symbols"])
    print(json.dumps(out, indent=2)[:3000])
    logger.info("=== DEBUG END (%.2fs) ===", time.time() - t0)

if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python debug_run.py <IMAGE_PATH> [DETECTIONS_JSON]")
        sys.exit(1)
    main(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None)
