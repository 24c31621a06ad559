#!/usr/bin/env python3
"""
Flask API server for Blueprint Symbol Refiner
- Vision detection + box refinement in one call (/analyze)
- Refinement of already-detected candidates (/refine)
- Structured JSON logging
"""

import os
import time
import logging
import traceback

from flask import Flask, Response, request, jsonify
from flask_cors import CORS
from werkzeug.utils import secure_filename
from dotenv import load_dotenv
from pythonjsonlogger import jsonlogger

# --- Load env early
load_dotenv()
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from Symbol_Box_Refine import (
    ImageMetadata,
    SymbolRefiner,
    parse_detector_response,
    payload_or_default,
    safe_filename,
    symbols_to_csv,
)
from Vision_Symbol_Detect import VisionDetectorError, VisionSymbolDetector, validate_image_for_analysis

# ---------------------------
# Quiet Werkzeug request lines (dev server only)
# ---------------------------
logging.getLogger("werkzeug").setLevel(logging.ERROR)
logging.getLogger("werkzeug").propagate = False

# ---------------------------
# Structured JSON logging
# ---------------------------
logHandler = logging.StreamHandler()
formatter = jsonlogger.JsonFormatter(
    fmt='%(ts)s %(levelname)s %(message)s %(event)s %(dur_ms)s %(symbols)s',
    timestamp='ts'
)
logHandler.setFormatter(formatter)
logger = logging.getLogger(__name__)
logger.addHandler(logHandler)
logger.setLevel(logging.INFO)
logger.propagate = False

# ---------------------------
# Flask app + CORS
# ---------------------------
app = Flask(__name__)
CORS(app)

# ---------------------------
# Config
# ---------------------------
MAX_FILE_SIZE = int(os.getenv('MAX_FILE_SIZE', 20 * 1024 * 1024))  # 20MB default, vision API limit
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_SIZE + 1024 * 1024  # room for form fields

# ---------------------------
# Collaborators
# ---------------------------
detector = VisionSymbolDetector()
refiner = SymbolRefiner()

# ---------------------------
# Helpers
# ---------------------------
def error_response(code: int, error_code: str, message: str, details=None):
    resp = {'error_code': error_code, 'message': message}
    if details is not None:
        resp['details'] = details
    logger.error('API error', extra={
        'event': 'api_error',
        'error_code': error_code,
        'details': details,
        'ts': time.time()
    })
    return jsonify(resp), code

def _read_upload():
    """(bytes, mimetype, filename) or an error response tuple."""
    if 'file' not in request.files:
        return None, error_response(400, 'NO_FILE', 'No file part in request')
    file = request.files['file']
    if file.filename == '':
        return None, error_response(400, 'NO_FILENAME', 'No file selected')
    data = file.read()
    if len(data) > MAX_FILE_SIZE:
        return None, error_response(
            400, 'FILE_TOO_LARGE',
            f'File size {len(data)} exceeds maximum {MAX_FILE_SIZE} bytes'
        )
    return (data, (file.mimetype or '').lower(), secure_filename(file.filename)), None

def _optional_int(name: str):
    raw = request.form.get(name)
    if raw is None or raw.strip() == '':
        return None
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return None

# ---------------------------
# Routes
# ---------------------------
@app.route('/health', methods=['GET'])
def health_check():
    return jsonify({'status': 'healthy', 'version': '1.0.0', 'vision': detector.health()})

@app.route('/analyze', methods=['POST'])
def analyze_blueprint():
    """
    Multipart: file=<image>
    Response: { symbols, total_symbols, summary, confidence, processing_time_ms, analysis_timestamp }
    """
    t0 = time.time()
    try:
        upload, err = _read_upload()
        if err:
            return err
        image_bytes, mimetype, filename = upload

        valid, reason = validate_image_for_analysis(image_bytes, mimetype)
        if not valid:
            return error_response(400, 'INVALID_IMAGE', reason, {'mimetype': mimetype})

        try:
            payload = detector.detect(image_bytes, mimetype)
        except VisionDetectorError as e:
            logger.error("Detector error: %s", str(e), extra={
                'event': 'detector_error',
                'stack': traceback.format_exc(),
                'ts': time.time()
            })
            return error_response(502, 'DETECTOR_ERROR', f'Vision detection failed: {e}')

        result = refiner.refine_payload(payload, image_bytes)
        dur_ms = int((time.time() - t0) * 1000)
        logger.info('Blueprint analyzed', extra={
            'event': 'analyze_complete',
            'image_filename': filename,
            'candidates': len(payload.symbols),
            'symbols': result.total_symbols,
            'dur_ms': dur_ms,
            'ts': time.time()
        })
        return jsonify(result.to_dict())

    except Exception as e:
        logger.error("Analyze error: %s", str(e), extra={
            'event': 'analyze_error',
            'stack': traceback.format_exc(),
            'ts': time.time()
        })
        return error_response(500, 'INTERNAL_ERROR', f'Analysis failed: {e}')

@app.route('/refine', methods=['POST'])
def refine_detections():
    """
    Multipart: file=<image>, detections=<raw detector reply>, [width], [height]
    Runs only the refinement step on candidates detected elsewhere.
    """
    t0 = time.time()
    try:
        upload, err = _read_upload()
        if err:
            return err
        image_bytes, _, filename = upload

        raw = request.form.get('detections')
        if not raw:
            return error_response(400, 'NO_DATA', 'detections is required')

        width, height = _optional_int('width'), _optional_int('height')
        metadata = ImageMetadata(width=width, height=height) if (width or height) else None

        payload = payload_or_default(parse_detector_response(raw))
        result = refiner.refine_payload(payload, image_bytes, metadata)

        logger.info('Detections refined', extra={
            'event': 'refine_complete',
            'image_filename': filename,
            'candidates': len(payload.symbols),
            'symbols': result.total_symbols,
            'dur_ms': int((time.time() - t0) * 1000),
            'ts': time.time()
        })
        return jsonify(result.to_dict())

    except Exception as e:
        logger.error("Refine error: %s", str(e), extra={
            'event': 'refine_error',
            'stack': traceback.format_exc(),
            'ts': time.time()
        })
        return error_response(500, 'INTERNAL_ERROR', f'Refinement failed: {e}')

@app.route('/export_csv', methods=['POST'])
def export_csv():
    """Body: { symbols: [...], name?: string } -> text/csv attachment"""
    data = request.get_json(silent=True) or {}
    symbols = data.get('symbols')
    if not isinstance(symbols, list):
        return error_response(400, 'NO_DATA', 'symbols list is required')

    filename = f"{safe_filename(data.get('name'))}-symbols.csv"
    return Response(
        symbols_to_csv(symbols),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'}
    )

# ---------------------------
# Main
# ---------------------------
if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'

    logger.info('Starting server', extra={
        'event': 'server_start',
        'port': port,
        'debug': debug,
        'ts': time.time()
    })

    # Force no reloader (avoids double-run)
    app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=False)
