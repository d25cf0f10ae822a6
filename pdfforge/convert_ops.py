# pdfforge/convert_ops.py
import base64
import binascii
import io
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

import fitz  # PyMuPDF
from docx import Document
from docx.enum.section import WD_ORIENT, WD_SECTION
from docx.shared import Pt
from PIL import Image
from pptx import Presentation
from pptx.util import Emu, Inches
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .backends import open_document
from .errors import InvalidInput
from .jobs import ConversionResult, JobContext, Output
from .pdf_ops import Params, json_field, pdf_stem
from .placement import fit_centered

logger = logging.getLogger(__name__)

DOCX_MEDIA = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_MEDIA = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

PAGE_SIZES = {
    "a4": (595, 842),
    "letter": (612, 792),
    "legal": (612, 1008),
}


def _rgb(img: Image.Image) -> Image.Image:
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _jpeg_bytes(data: bytes, quality: int = 85):
    """Re-encode any supported image as RGB JPEG. Returns (bytes, width, height)."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        rgb = _rgb(img)
        buf = io.BytesIO()
        rgb.save(buf, "JPEG", quality=quality)
        return buf.getvalue(), rgb.width, rgb.height


# ----------------------------
# Office -> PDF
# ----------------------------
class NoParams(Params):
    pass


def office_handler(chain: str, filename: str):
    """
    Build a handler that sends the upload through a backend chain.
    `filename` is formatted with `stem` and `ts`.
    """

    def handler(ctx: JobContext) -> ConversionResult:
        f = ctx.first
        src = ctx.workspace.write(f"input{f.extension}", f.data)
        outcome = ctx.backends[chain].invoke(ctx.workspace, src)
        headers = {}
        if outcome.fell_back:
            headers["X-Fallback-Method"] = outcome.backend
        name = filename.format(stem=f.stem, ts=int(time.time() * 1000))
        return ConversionResult(outputs=[Output(name, outcome.output.read_bytes())], headers=headers)

    return handler


# ----------------------------
# Images -> PDF
# ----------------------------
class ImagesToPdfParams(Params):
    page_size: Literal["a4", "letter", "legal"] = Field("a4", alias="pageSize")
    orientation: Literal["portrait", "landscape"] = "portrait"

    @field_validator("page_size", "orientation", mode="before")
    @classmethod
    def _lower(cls, v):
        return str(v).strip().lower()


def images_to_pdf(ctx: JobContext) -> ConversionResult:
    params: ImagesToPdfParams = ctx.params
    page_w, page_h = PAGE_SIZES[params.page_size]
    if params.orientation == "landscape":
        page_w, page_h = page_h, page_w

    doc = fitz.open()
    for f in ctx.inputs:
        try:
            jpeg, img_w, img_h = _jpeg_bytes(f.data)
        except Exception as e:
            logger.warning("jpg-to-pdf: skipping %s: %s", f.name, e)
            continue
        x, y, w, h = fit_centered(img_w, img_h, page_w, page_h)
        page = doc.new_page(width=page_w, height=page_h)
        page.insert_image(fitz.Rect(x, y, x + w, y + h), stream=jpeg)

    if doc.page_count == 0:
        doc.close()
        raise InvalidInput("One or more files are corrupted or not valid image files.")
    count = doc.page_count
    data = doc.tobytes(garbage=3, deflate=True)
    doc.close()
    return ConversionResult(outputs=[Output("images-to-pdf.pdf", data)], item_count=count)


class PageData(BaseModel):
    data: str
    type: str = "png"


class EditedPagesParams(Params):
    pages: List[Union[str, PageData]] = Field(min_length=1)
    metadata: Optional[Dict[str, Any]] = None


PDF_METADATA_KEYS = ("title", "author", "subject", "creator", "keywords")


def _page_bytes(page: Union[str, PageData]) -> bytes:
    """Data URL, bare base64 string or {data, type} object."""
    if isinstance(page, PageData):
        payload = page.data
    elif page.startswith("data:"):
        _, _, payload = page.partition(",")
    else:
        payload = page
    if not payload.strip():
        raise ValueError("empty page data")
    return base64.b64decode(payload, validate=False)


def _pdf_metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
    out = {}
    for key in PDF_METADATA_KEYS:
        value = metadata.get(key)
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        out[key] = str(value)
    return out


def edited_pages_to_pdf(ctx: JobContext) -> ConversionResult:
    """Each page image becomes one page of exactly its own size."""
    params: EditedPagesParams = ctx.params
    metadata = params.metadata or {}
    doc = fitz.open()
    for n, page_data in enumerate(params.pages, start=1):
        try:
            raw = _page_bytes(page_data)
            with Image.open(io.BytesIO(raw)) as img:
                width, height = img.size
            page = doc.new_page(width=width, height=height)
            page.insert_image(page.rect, stream=raw)
        except (ValueError, binascii.Error, OSError, RuntimeError) as e:
            logger.warning("pdf-edit-merge: skipping page %d: %s", n, e)
            continue

    if doc.page_count == 0:
        doc.close()
        raise InvalidInput("None of the provided pages could be read.")

    info = _pdf_metadata(metadata)
    if info:
        doc.set_metadata(info)
    count = doc.page_count
    data = doc.tobytes(garbage=3, deflate=True)
    doc.close()

    name = str(metadata.get("filename") or "edited-document.pdf")
    return ConversionResult(outputs=[Output(name, data)], item_count=count)


# ----------------------------
# PDF -> images / Word / PowerPoint
# ----------------------------
class PdfToImagesParams(Params):
    format: Literal["jpeg", "png"] = "jpeg"
    quality: int = Field(100, ge=1, le=100)
    dpi: int = 150

    @field_validator("format", mode="before")
    @classmethod
    def _fmt(cls, v):
        v = str(v).strip().lower()
        return "jpeg" if v == "jpg" else v

    @field_validator("dpi")
    @classmethod
    def _clamp(cls, v):
        return max(72, min(v, 300))


def _rasterize(ctx: JobContext, dpi: int, fmt: str = "png", quality: int = 90) -> List[Path]:
    f = ctx.first
    open_document(f.data).close()
    src = ctx.workspace.write("input.pdf", f.data)
    return ctx.backends["raster"].invoke(ctx.workspace, src, dpi=dpi, fmt=fmt, quality=quality).output


def pdf_to_images(ctx: JobContext) -> ConversionResult:
    params: PdfToImagesParams = ctx.params
    images = _rasterize(ctx, params.dpi, params.format, params.quality)
    media = "image/jpeg" if params.format == "jpeg" else "image/png"
    outputs = [
        Output(f"page-{i}.{params.format}", p.read_bytes(), media)
        for i, p in enumerate(images, start=1)
    ]
    return ConversionResult(outputs=outputs, archive_name="pdf-images.zip")


class PdfToOfficeParams(Params):
    dpi: int = 300

    @field_validator("dpi")
    @classmethod
    def _clamp(cls, v):
        return max(72, min(v, 600))


LETTER = (8.5 * 72, 11 * 72)
DOCX_MARGIN = 0.1 * 72


def pdf_to_word(ctx: JobContext) -> ConversionResult:
    """One image per page; each section sized portrait or landscape to match."""
    images = _rasterize(ctx, ctx.params.dpi)

    doc = Document()
    placed = 0
    for n, path in enumerate(images, start=1):
        try:
            with Image.open(path) as img:
                img_w, img_h = img.size
        except OSError as e:
            logger.warning("pdf-to-word: skipping page %d: %s", n, e)
            continue

        landscape = img_w > img_h
        page_w, page_h = (LETTER[1], LETTER[0]) if landscape else LETTER

        section = doc.sections[0] if placed == 0 else doc.add_section(WD_SECTION.NEW_PAGE)
        section.orientation = WD_ORIENT.LANDSCAPE if landscape else WD_ORIENT.PORTRAIT
        section.page_width, section.page_height = Pt(page_w), Pt(page_h)
        for side in ("left_margin", "right_margin", "top_margin", "bottom_margin"):
            setattr(section, side, Pt(DOCX_MARGIN))

        _, _, w, h = fit_centered(img_w, img_h, page_w - 2 * DOCX_MARGIN, page_h - 2 * DOCX_MARGIN)
        doc.add_picture(str(path), width=Pt(w), height=Pt(h))
        placed += 1

    if not placed:
        raise InvalidInput("No images were produced from the PDF. Is the PDF valid?")

    buf = io.BytesIO()
    doc.save(buf)
    return ConversionResult(
        outputs=[Output(f"{pdf_stem(ctx.first.name)}.docx", buf.getvalue(), DOCX_MEDIA)],
        item_count=placed,
    )


def pdf_to_powerpoint(ctx: JobContext) -> ConversionResult:
    """Slides take the first page's size; every page image is fitted and centred."""
    dpi = ctx.params.dpi
    images = _rasterize(ctx, dpi)

    prs = Presentation()
    blank = prs.slide_layouts[6]
    placed = 0
    for n, path in enumerate(images, start=1):
        try:
            with Image.open(path) as img:
                img_w, img_h = img.size
        except OSError as e:
            logger.warning("pdf-to-powerpoint: skipping page %d: %s", n, e)
            continue

        if placed == 0:
            prs.slide_width = Inches(img_w / dpi)
            prs.slide_height = Inches(img_h / dpi)

        x, y, w, h = fit_centered(img_w, img_h, prs.slide_width, prs.slide_height)
        slide = prs.slides.add_slide(blank)
        slide.shapes.add_picture(str(path), Emu(int(x)), Emu(int(y)), width=Emu(int(w)), height=Emu(int(h)))
        placed += 1

    if not placed:
        raise InvalidInput("No images were produced from the PDF. Is the PDF valid?")

    buf = io.BytesIO()
    prs.save(buf)
    return ConversionResult(
        outputs=[Output(f"{pdf_stem(ctx.first.name) or 'presentation'}.pptx", buf.getvalue(), PPTX_MEDIA)],
        item_count=placed,
    )


# ----------------------------
# Web page -> PDF
# ----------------------------
class HtmlOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conversion_type: Literal["text", "screenshot"] = Field("text", alias="conversionType")


class HtmlToPdfParams(Params):
    url: str
    options: HtmlOptions = Field(default_factory=HtmlOptions)

    @field_validator("options", mode="before")
    @classmethod
    def _parse(cls, v):
        return json_field(v, "Invalid options format.")

    @field_validator("url")
    @classmethod
    def _valid(cls, v):
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Please provide a valid URL (including http:// or https://).")
        return v


def html_to_pdf(ctx: JobContext) -> ConversionResult:
    params: HtmlToPdfParams = ctx.params
    mode = params.options.conversion_type
    chain = "html" if mode == "screenshot" else "html-text"
    outcome = ctx.backends[chain].invoke(ctx.workspace, params.url)

    headers = {}
    label = mode
    if outcome.fell_back:
        headers["X-Fallback-Method"] = "text-extraction"
        label = "fallback"

    domain = urlparse(params.url).hostname or "webpage"
    if domain.startswith("www."):
        domain = domain[4:]
    name = f"{domain}-{label}-{int(time.time() * 1000)}.pdf"
    return ConversionResult(outputs=[Output(name, outcome.output.read_bytes())], headers=headers)
