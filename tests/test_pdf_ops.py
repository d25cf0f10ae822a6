import io
import json

import pytest
from PIL import Image
from PyPDF2 import PdfReader

from pdfforge.errors import InvalidInput
from pdfforge.jobs import InputFile
from pdfforge.pdf_ops import pdf_info, thumbnail
from pdfforge.registry import JobRegistry, build_request

from conftest import build_pdf, page_texts


@pytest.fixture
def registry(settings):
    return JobRegistry(settings)


def pdf(pages=1, name="doc.pdf", **kw):
    return InputFile(name=name, content_type="application/pdf", data=build_pdf(pages, **kw))


def rotations(data):
    return [int(p.get("/Rotate", 0) or 0) for p in PdfReader(io.BytesIO(data)).pages]


def run(registry, operation, fields, *files):
    return registry.run(build_request(operation, fields, list(files)))


# ----------------------------
# Rotate / organize
# ----------------------------
def test_rotate_odd_pages(registry):
    result = run(registry, "rotate", {"rotation": "90", "pages": "odd"}, pdf(3))
    assert rotations(result.body) == [90, 0, 90]
    assert result.item_count == 2
    assert result.filename == "rotated-doc.pdf"


def test_rotate_custom_pages(registry):
    result = run(registry, "rotate", {"rotation": "180", "pages": "2-3"}, pdf(4))
    assert rotations(result.body) == [0, 180, 180, 0]


def test_rotation_is_absolute(registry):
    once = run(registry, "rotate", {"rotation": "90"}, pdf(2))
    again = run(registry, "rotate", {"rotation": "90"}, InputFile("r.pdf", "application/pdf", once.body))
    assert rotations(again.body) == [90, 90]

    back = run(registry, "rotate", {"rotation": "0"}, InputFile("r.pdf", "application/pdf", once.body))
    assert rotations(back.body) == [0, 0]


def test_organize_reorders_and_skips_bad_indices(registry):
    ops = json.dumps([
        {"originalPageIndex": 2, "rotation": 90},
        {"originalPageIndex": 0},
        {"originalPageIndex": 9},
        {"originalPageIndex": 1, "rotation": 45},
    ])
    result = run(registry, "organize", {"pageOperations": ops}, pdf(3))
    assert page_texts(result.body) == ["Page 3", "Page 1", "Page 2"]
    assert rotations(result.body) == [90, 0, 0]
    assert result.item_count == 3


def test_organize_with_no_valid_pages(registry):
    ops = json.dumps([{"originalPageIndex": 5}])
    with pytest.raises(InvalidInput):
        run(registry, "organize", {"pageOperations": ops}, pdf(2))


def test_organize_bad_json(registry):
    with pytest.raises(InvalidInput) as exc:
        run(registry, "organize", {"pageOperations": "{not json"}, pdf(2))
    assert "Invalid page operations format." in exc.value.message


# ----------------------------
# Extract / crop
# ----------------------------
def test_extract_pages_in_document_order(registry):
    result = run(registry, "extract-pages", {"pagesToExtract": "4,1-2,2"}, pdf(5))
    assert page_texts(result.body) == ["Page 1", "Page 2", "Page 4"]
    assert result.filename == "extracted-pages-doc.pdf"


def test_extract_pages_requires_a_range(registry):
    with pytest.raises(InvalidInput) as exc:
        run(registry, "extract-pages", {}, pdf(2))
    assert exc.value.message == "Please specify which pages to extract."


def test_crop_flips_into_pdf_space(registry):
    crop = {"x": 10, "y": 20, "width": 100, "height": 200, "pageSelection": "all"}
    result = run(registry, "crop", {"cropData": json.dumps(crop)}, pdf(2))

    for page in PdfReader(io.BytesIO(result.body)).pages:
        box = page.cropbox
        assert float(box.left) == pytest.approx(10)
        assert float(box.bottom) == pytest.approx(842 - 20 - 200)
        assert float(box.right) == pytest.approx(110)
        assert float(box.top) == pytest.approx(822)
    assert result.filename == "cropped.pdf"


def test_crop_selected_pages_only(registry):
    crop = {"x": 0, "y": 0, "width": 50, "height": 50, "pageSelection": "custom", "selectedPages": [1, 7]}
    result = run(registry, "crop", {"cropData": json.dumps(crop)}, pdf(2))

    first, second = PdfReader(io.BytesIO(result.body)).pages
    assert float(first.cropbox.width) == pytest.approx(595)
    assert float(second.cropbox.width) == pytest.approx(50)
    assert result.item_count == 1


def test_crop_rejects_zero_size(registry):
    crop = {"x": 0, "y": 0, "width": 0, "height": 50}
    with pytest.raises(InvalidInput):
        run(registry, "crop", {"cropData": json.dumps(crop)}, pdf(1))


# ----------------------------
# Stamping
# ----------------------------
def test_page_numbers_with_total(registry):
    fields = {"format": "Page {page} of {total}", "position": "top-left"}
    result = run(registry, "add-page-numbers", fields, pdf(3, label="Doc"))

    texts = page_texts(result.body)
    assert "Page 2 of 3" in texts[1]
    assert result.filename == "doc_with_page_numbers.pdf"
    assert result.item_count == 3


def test_page_numbers_legacy_fields(registry):
    fields = {"formatString": "number", "startNumber": "5", "size": "10", "color": "#ff0000"}
    result = run(registry, "add-page-numbers", fields, pdf(2, label="Doc"))
    texts = page_texts(result.body)
    assert "5" in texts[0].split()
    assert "6" in texts[1].split()


def test_page_numbers_on_corrupt_pdf(registry):
    broken = InputFile("broken.pdf", "application/pdf", b"%PDF-1.4 truncated")
    with pytest.raises(InvalidInput):
        run(registry, "add-page-numbers", {}, broken)


def test_center_watermark(registry):
    result = run(registry, "add-watermark", {"text": "CONFIDENTIAL", "watermarkType": "center"}, pdf(2))
    for text in page_texts(result.body):
        assert "CONFIDENTIAL" in text
    assert result.filename == "doc_watermarked.pdf"


def test_tilted_watermark_tiles_the_page(registry):
    result = run(registry, "add-watermark", {"text": "SAMPLE", "fontSize": "24"}, pdf(1))
    assert page_texts(result.body)[0].count("SAMPLE") >= 2


def test_blank_watermark_text_uses_default(registry):
    result = run(registry, "add-watermark", {"text": "  ", "watermarkType": "center"}, pdf(1))
    assert "WATERMARK" in page_texts(result.body)[0]


def test_watermark_rejects_bad_opacity(registry):
    with pytest.raises(InvalidInput):
        run(registry, "add-watermark", {"opacity": "2"}, pdf(1))


# ----------------------------
# Inspection
# ----------------------------
def test_pdf_info():
    info = pdf_info("doc.pdf", build_pdf(2, size=(612, 792)))
    assert info["pageCount"] == 2
    assert info["fileName"] == "doc.pdf"
    assert info["pages"][1] == {"pageNumber": 2, "width": 612.0, "height": 792.0, "rotation": 0}


def test_pdf_info_rejects_garbage():
    with pytest.raises(InvalidInput):
        pdf_info("x.pdf", b"hello")


def test_thumbnail_width():
    png = thumbnail(build_pdf(2), page_number=2, width=200)
    with Image.open(io.BytesIO(png)) as img:
        assert img.format == "PNG"
        assert abs(img.width - 200) <= 1


def test_thumbnail_missing_page():
    with pytest.raises(InvalidInput):
        thumbnail(build_pdf(1), page_number=3)
