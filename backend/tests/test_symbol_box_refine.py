import io

import numpy as np
import pytest
from PIL import Image, ImageDraw

import Symbol_Box_Refine as sbr
from Symbol_Box_Refine import (
    ImageMetadata,
    ParseFailed,
    ParseOk,
    PixelRegion,
    RawCandidateSymbol,
    RecenterMethod,
    RecenterOutcome,
    RefinedSymbol,
    RegionExtractionError,
    SanitizedBox,
    SymbolRefiner,
    clamp_box,
    crop_window,
    gradient_magnitude,
    locate_by_darkness,
    map_category,
    normalize_overall_confidence,
    normalize_symbol_confidence,
    parse_detector_response,
    payload_or_default,
    percentile_cutoff,
    recenter_box,
    safe_filename,
    symbols_to_csv,
)

META_1000 = ImageMetadata(width=1000, height=1000)


def _png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _page_with_square(x0: int, y0: int, side: int = 20, size: int = 1000) -> bytes:
    img = Image.new("L", (size, size), 255)
    ImageDraw.Draw(img).rectangle([x0, y0, x0 + side - 1, y0 + side - 1], fill=0)
    return _png(img)


def _crop_with_square(size: int, start: int, side: int = 20) -> np.ndarray:
    crop = np.full((size, size), 255.0)
    crop[start:start + side, start:start + side] = 0.0
    return crop


class StubDecoder:
    """Serves canned crops keyed by crop side length."""

    def __init__(self, crops, meta=META_1000):
        self.crops = crops
        self.meta = meta
        self.sizes = []

    def metadata(self, image_bytes):
        return self.meta

    def extract_gray(self, image_bytes, left, top, width, height):
        self.sizes.append(width)
        crop = self.crops.get(width)
        if crop is None:
            raise RegionExtractionError(f"no crop for {width}")
        return crop.copy()


# ---------------------------
# BoxClamper
# ---------------------------
@pytest.mark.parametrize("coords", [
    None,
    {},
    {"x": -20, "y": 250, "width": 0.5, "height": 99},
    {"x": "abc", "y": None, "width": float("nan"), "height": float("inf")},
    {"x": 12.5, "y": 88.0, "width": 5, "height": 11},
    "not a dict",
])
def test_clamp_box_always_in_range_and_idempotent(coords):
    box = clamp_box(coords)
    assert 0 <= box.x <= 100 and 0 <= box.y <= 100
    assert 3 <= box.width <= 12 and 3 <= box.height <= 12
    assert clamp_box(box) == box


def test_clamp_box_defaults_and_limits():
    assert clamp_box(None) == SanitizedBox(50.0, 50.0, 7.0, 7.0)
    assert clamp_box({"x": -20, "y": 250, "width": 1, "height": 30}) == SanitizedBox(0.0, 100.0, 3.0, 12.0)
    assert clamp_box({"x": "25", "y": 40}).x == 25.0


# ---------------------------
# ConfidenceNormalizer
# ---------------------------
@pytest.mark.parametrize("raw, expected", [
    (0, 0.0), (0.5, 0.5), (1, 1.0), (85, 0.85), (-5, 0.0),
    (float("nan"), 0.0), (150, 1.0), (None, 0.0), ("85%", 0.85), ("high", 0.0),
])
def test_normalize_symbol_confidence(raw, expected):
    assert normalize_symbol_confidence(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw, expected", [
    (0.85, 85.0), (50, 50.0), (1, 100.0), (-1, 0.0), (float("nan"), 0.0), (None, 0.0), (250, 100.0),
])
def test_normalize_overall_confidence(raw, expected):
    assert normalize_overall_confidence(raw) == pytest.approx(expected)


# ---------------------------
# CategoryMapper
# ---------------------------
@pytest.mark.parametrize("raw, expected", [
    ("Plumbing", "hydraulic"), ("HVAC", "mechanical"), ("motor", "electrical"),
    ("", "other"), (None, "other"), ("xyz123", "other"), ("  Pump ", "hydraulic"),
    ("compressed_air", "pneumatic"), ("Exhaust fan unit", "mechanical"),
    ("hydraulics", "hydraulic"), ("Electrical panel", "electrical"), ("unknown", "other"),
    ("structural", "mechanical"), ("VFD", "electrical"),
])
def test_map_category(raw, expected):
    assert map_category(raw) == expected


def test_hvac_hint_wins_over_later_hints():
    # "hvac control valve" matches all three substring groups; hvac is checked first
    assert map_category("hvac control valve") == "mechanical"


# ---------------------------
# Detector response parsing
# ---------------------------
def test_parse_fenced_json_block():
    text = 'Here you go:\n```json\n{"symbols": [{"name": "P-1"}], "summary": "1 pump", "overallConfidence": 0.9}\n```'
    result = parse_detector_response(text)
    assert isinstance(result, ParseOk)
    assert result.payload.symbols == [{"name": "P-1"}]
    assert result.payload.summary == "1 pump"
    assert result.payload.overall_confidence == 0.9


def test_parse_bare_json_with_prose_and_bad_symbols_field():
    result = parse_detector_response('Result: {"symbols": "none", "summary": 3} done')
    assert isinstance(result, ParseOk)
    assert result.payload.symbols == []
    assert result.payload.summary is None


@pytest.mark.parametrize("text", ["", None, "no json here", '{"symbols": [', "[1, 2, 3]"])
def test_parse_failures_take_default_path(text):
    result = parse_detector_response(text)
    assert isinstance(result, ParseFailed)
    payload = payload_or_default(result)
    assert payload.symbols == []
    assert payload.summary == sbr.PARSE_FAILED_SUMMARY
    assert payload.overall_confidence == 50


# ---------------------------
# Localization
# ---------------------------
def test_crop_window_stays_inside_image():
    assert crop_window(SanitizedBox(50, 50, 7, 7), META_1000, 0.08) == (460, 460, 80)
    assert crop_window(SanitizedBox(0, 100, 7, 7), META_1000, 0.12) == (0, 880, 120)
    # tiny images still get the 64px floor
    assert crop_window(SanitizedBox(50, 50, 7, 7), ImageMetadata(200, 100), 0.08)[2] == 64
    # and huge ones the 256px ceiling
    assert crop_window(SanitizedBox(50, 50, 7, 7), ImageMetadata(6000, 4000), 0.12)[2] == 256


def test_gradient_magnitude_border_is_zero():
    pixels = np.random.default_rng(7).integers(0, 255, size=(64, 64)).astype(np.float64)
    mag = gradient_magnitude(pixels)
    assert mag.shape == (64, 64)
    assert not mag[0, :].any() and not mag[-1, :].any()
    assert not mag[:, 0].any() and not mag[:, -1].any()
    assert mag[1:-1, 1:-1].min() >= 0


def test_gradient_magnitude_is_l1_sobel():
    pixels = np.zeros((5, 5))
    pixels[:, 3:] = 100.0
    mag = gradient_magnitude(pixels)
    # vertical step: |Gx| = (1 + 2 + 1) * 100 on the columns beside the step, Gy = 0
    assert mag[2, 2] == pytest.approx(400.0)
    assert mag[2, 3] == pytest.approx(400.0)
    assert mag[2, 1] == 0.0


def test_percentile_cutoff():
    values = np.arange(100, dtype=np.float64)
    assert percentile_cutoff(values) == 82.0
    assert percentile_cutoff(np.zeros(0)) == 0.0


def test_edges_recenter_onto_symbol():
    image = _page_with_square(510, 510)
    box = clamp_box({"x": 50, "y": 50, "width": 6, "height": 5})
    outcome = recenter_box(box, image, META_1000, sbr.PillowImageDecoder())
    assert outcome.method is RecenterMethod.EDGES
    assert outcome.scale == 0.08
    assert outcome.box.x == pytest.approx(51.95)
    assert outcome.box.y == pytest.approx(51.95)
    assert (outcome.box.width, outcome.box.height) == (6.0, 5.0)


def test_edge_localization_is_deterministic():
    image = _page_with_square(470, 520, side=30)
    box = clamp_box({"x": 48, "y": 51})
    decoder = sbr.PillowImageDecoder()
    first = recenter_box(box, image, META_1000, decoder)
    second = recenter_box(box, image, META_1000, decoder)
    assert first == second


def test_label_band_is_ignored_by_edges():
    # the only graphic sits in the top quarter of both crops
    image = _page_with_square(495, 445, side=10)
    box = clamp_box({"x": 50, "y": 50})
    outcome = recenter_box(box, image, META_1000, sbr.PillowImageDecoder())
    assert outcome.method is RecenterMethod.DARKNESS


def test_wider_scale_used_before_darkness_fallback():
    decoder = StubDecoder({80: np.full((80, 80), 200.0), 120: _crop_with_square(120, 70)})
    outcome = recenter_box(clamp_box({"x": 50, "y": 50}), b"unused", META_1000, decoder)
    assert decoder.sizes == [80, 120]
    assert outcome.method is RecenterMethod.EDGES
    assert outcome.scale == 0.12
    # crop origin 440 + square centre 79.5
    assert outcome.box.x == pytest.approx(51.95)


def test_darkness_fallback_uses_last_extracted_crop():
    decoder = StubDecoder({80: np.full((80, 80), 200.0), 120: np.full((120, 120), 200.0)})
    outcome = recenter_box(clamp_box({"x": 50, "y": 50}), b"unused", META_1000, decoder)
    assert outcome.method is RecenterMethod.DARKNESS
    assert outcome.scale == 0.12
    # uniform crop: centroid of every pixel below the 30-row label band
    assert outcome.box.x == pytest.approx(49.95)
    assert outcome.box.y == pytest.approx(51.45)


def test_locate_by_darkness_skips_label_band():
    pixels = np.full((80, 80), 255.0)
    pixels[5, 5] = 0.0     # inside the masked band
    pixels[50, 30] = 0.0
    region = PixelRegion(left=100, top=200, size=80, pixels=pixels)
    found = locate_by_darkness(region, SanitizedBox(10, 20, 4, 4), META_1000)
    assert found.x == pytest.approx(13.0)
    assert found.y == pytest.approx(25.0)
    assert (found.width, found.height) == (4, 4)


def test_recenter_never_raises():
    class BrokenDecoder:
        def extract_gray(self, *a, **k):
            raise ValueError("boom")

    box = clamp_box({"x": 30, "y": 70})
    outcome = recenter_box(box, b"", META_1000, BrokenDecoder())
    assert outcome == RecenterOutcome(box=box, method=RecenterMethod.UNCHANGED)


def test_pillow_decoder_refuses_out_of_bounds_crop():
    decoder = sbr.PillowImageDecoder()
    image = _png(Image.new("RGB", (100, 50), "white"))
    assert decoder.metadata(image) == ImageMetadata(100, 50)
    assert decoder.extract_gray(image, 10, 10, 20, 20).shape == (20, 20)
    with pytest.raises(RegionExtractionError):
        decoder.extract_gray(image, 90, 0, 20, 20)
    with pytest.raises(RegionExtractionError):
        decoder.extract_gray(b"not an image", 0, 0, 4, 4)


# ---------------------------
# Pipeline
# ---------------------------
def test_one_pixel_image_falls_back_to_clamped_box():
    image = _png(Image.new("L", (1, 1), 128))
    candidate = {
        "name": "P-1",
        "coordinates": {"x": 50, "y": 50, "width": 7, "height": 7},
        "confidence": 150,
        "category": "Pump",
    }
    result = SymbolRefiner(max_workers=2).refine([candidate], image)
    assert result.total_symbols == 1
    sym = result.symbols[0]
    assert sym.confidence == 1.0
    assert sym.category == "hydraulic"
    assert sym.coordinates == SanitizedBox(50.0, 50.0, 7.0, 7.0)
    assert sym.refinement is RecenterMethod.UNCHANGED


def test_non_finite_coordinates_are_dropped(monkeypatch):
    def fake_recenter(box, image_bytes, meta, decoder, scales):
        if box.x == 20:
            return RecenterOutcome(SanitizedBox(float("nan"), box.y, box.width, box.height), RecenterMethod.EDGES, 0.08)
        return RecenterOutcome(box, RecenterMethod.UNCHANGED)

    monkeypatch.setattr(sbr, "recenter_box", fake_recenter)
    candidates = [{"name": n, "coordinates": {"x": x}} for n, x in (("A", 10), ("B", 20), ("C", 30))]
    result = SymbolRefiner(decoder=StubDecoder({})).refine(candidates, b"img")
    assert [s.name for s in result.symbols] == ["A", "C"]
    assert result.total_symbols == 2


def test_output_order_matches_input_order():
    candidates = [{"name": f"S-{i}", "coordinates": {"x": (i * 7) % 100, "y": (i * 13) % 100}} for i in range(12)]
    decoder = StubDecoder({80: _crop_with_square(80, 40), 120: _crop_with_square(120, 60)})
    result = SymbolRefiner(decoder=decoder, max_workers=4).refine(candidates, b"img")
    assert [s.name for s in result.symbols] == [f"S-{i}" for i in range(12)]


def test_malformed_candidates_get_defaults():
    result = SymbolRefiner(decoder=StubDecoder({})).refine(
        [{"name": "   ", "description": "ignored"}, "garbage", {"name": 101, "description": "tag"}],
        b"img",
    )
    first, second, third = result.symbols
    assert first.name == "?" and first.description == sbr.UNREADABLE_DESCRIPTION
    assert second.name == "?" and second.category == "other" and second.confidence == 0.0
    assert second.coordinates == SanitizedBox(50.0, 50.0, 7.0, 7.0)
    assert third.name == "101" and third.description == "tag"


def test_summary_and_overall_confidence():
    refiner = SymbolRefiner(decoder=StubDecoder({}))
    result = refiner.refine([], b"img", summary="  ", overall_confidence=0.85)
    assert result.summary == "Analysis completed"
    assert result.confidence == pytest.approx(85.0)
    assert result.total_symbols == 0

    payload = payload_or_default(parse_detector_response("garbage"))
    result = refiner.refine_payload(payload, b"img")
    assert result.summary == sbr.PARSE_FAILED_SUMMARY
    assert result.confidence == 50.0


def test_metadata_resolution_uses_configurable_default(monkeypatch):
    class NoMetaDecoder(StubDecoder):
        def metadata(self, image_bytes):
            raise OSError("cannot identify image")

    refiner = SymbolRefiner(decoder=NoMetaDecoder({}), default_image_size=(640, 480))
    assert refiner.resolve_metadata(b"img") == ImageMetadata(640, 480)
    assert refiner.resolve_metadata(b"img", ImageMetadata(width=800)) == ImageMetadata(800, 480)

    monkeypatch.setenv("DEFAULT_IMAGE_WIDTH", "1200")
    monkeypatch.setenv("DEFAULT_IMAGE_HEIGHT", "900")
    assert SymbolRefiner().default_image_size == ImageMetadata(1200, 900)

    with pytest.raises(ValueError):
        SymbolRefiner(default_image_size=(0, 100))


def test_partial_metadata_filled_from_decoded_image():
    img = Image.new("L", (1000, 2000), 255)
    ImageDraw.Draw(img).rectangle([500, 1010, 519, 1029], fill=0)
    image = _png(img)
    candidate = {"name": "V-1", "coordinates": {"x": 50, "y": 50}}
    refiner = SymbolRefiner(max_workers=1)

    assert refiner.resolve_metadata(image, ImageMetadata(width=1000)) == ImageMetadata(1000, 2000)
    assert refiner.resolve_metadata(image, ImageMetadata(width=0, height=2000)) == ImageMetadata(1000, 2000)

    full = refiner.refine([candidate], image).symbols[0]
    partial = refiner.refine([candidate], image, ImageMetadata(width=1000)).symbols[0]
    assert partial.refinement is RecenterMethod.EDGES
    assert partial.coordinates == full.coordinates
    assert partial.coordinates.x == pytest.approx(50.95)
    assert partial.coordinates.y == pytest.approx(50.975)


def test_decoded_pages_released_after_refine():
    image = _page_with_square(510, 510)
    SymbolRefiner(max_workers=2).refine([{"coordinates": {"x": 50, "y": 50}}] * 3, image)
    assert sbr._decode_gray.cache_info().currsize == 0


def test_worker_crash_keeps_clamped_box(monkeypatch):
    refiner = SymbolRefiner(decoder=StubDecoder({}))

    def explode(*a, **k):
        raise RuntimeError("worker died")

    monkeypatch.setattr(refiner, "refine_symbol", explode)
    result = refiner.refine([{"name": "EF-1", "coordinates": {"x": 150}, "category": "fan"}], b"img")
    sym = result.symbols[0]
    assert sym.coordinates == SanitizedBox(100.0, 50.0, 7.0, 7.0)
    assert sym.category == "mechanical"


def test_debug_overlay_written(tmp_path, monkeypatch):
    monkeypatch.setenv("DEBUG_DIR", str(tmp_path))
    image = _page_with_square(510, 510)
    refiner = SymbolRefiner(debug_overlay=True)
    refiner.refine([{"name": "AHU-1", "coordinates": {"x": 50, "y": 50}}], image)
    assert (tmp_path / "debug_symbols.png").exists()


# ---------------------------
# CSV export
# ---------------------------
def test_symbols_to_csv_quotes_every_cell():
    sym = RefinedSymbol(
        name="FCU-1", description='fan coil "A"', confidence=0.85, category="mechanical",
        coordinates=SanitizedBox(25.0, 18.0, 7.0, 6.0), refinement=RecenterMethod.EDGES,
    )
    lines = symbols_to_csv([sym, {"name": "loose"}]).splitlines()
    assert lines[0] == '"Name","Category","Description","Confidence","X","Y","Width","Height"'
    assert lines[1] == '"FCU-1","mechanical","fan coil ""A""","0.85","25.0","18.0","7.0","6.0"'
    assert lines[2].startswith('"loose",')


def test_safe_filename():
    assert safe_filename("Floor 2 / HVAC!") == "floor-2-hvac"
    assert safe_filename("") == "blueprint"
    assert safe_filename(None) == "blueprint"


def test_raw_candidate_from_dict_drops_bad_shapes():
    cand = RawCandidateSymbol.from_dict({"name": ["x"], "coordinates": [1, 2], "category": True})
    assert cand == RawCandidateSymbol()
