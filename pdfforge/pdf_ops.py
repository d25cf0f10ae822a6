# pdfforge/pdf_ops.py
import io
import json
import logging
from typing import List, Literal

import fitz  # PyMuPDF
from pydantic import BaseModel, ConfigDict, Field, field_validator
from PyPDF2 import PdfReader, PdfWriter
from PyPDF2.generic import NameObject, NumberObject, RectangleObject

from .backends import COMPRESSION_LEVELS, open_document
from .errors import CORRUPT_PDF, InvalidInput
from .jobs import ConversionResult, JobContext, Output
from .pages import parse_page_groups, parse_page_range, select_pages
from .placement import anchor_position, fit_font_size, hex_to_rgb, watermark_tiles

logger = logging.getLogger(__name__)

FONTS = {
    "Helvetica": "helv",
    "Times-Roman": "tiro",
    "Courier": "cour",
    "Arial": "helv",
    "Georgia": "tiro",
}


class Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def json_field(value, message: str):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            raise ValueError(message)
    return value


# ----------------------------
# PyPDF2 helpers
# ----------------------------
def open_pdf(data: bytes) -> PdfReader:
    try:
        reader = PdfReader(io.BytesIO(data))
        count = len(reader.pages)
    except Exception as e:
        raise InvalidInput(CORRUPT_PDF, detail=repr(e))
    if count == 0:
        raise InvalidInput("The PDF has no pages.")
    return reader


def write_pdf(writer: PdfWriter) -> bytes:
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def set_rotation(page, angle: int) -> None:
    """Absolute rotation. PyPDF2's rotate() adds to the current angle."""
    page[NameObject("/Rotate")] = NumberObject(angle % 360)


def pdf_stem(name: str) -> str:
    n = name or "document.pdf"
    return n[:-4] if n.lower().endswith(".pdf") else n


# ----------------------------
# Merge
# ----------------------------
class MergeParams(Params):
    excluded_pages: List[int] = Field(default_factory=list, alias="excludedPages")

    @field_validator("excluded_pages", mode="before")
    @classmethod
    def _split(cls, v):
        if isinstance(v, str):
            out = []
            for part in v.split(","):
                try:
                    out.append(int(part.strip()))
                except ValueError:
                    continue
            return out
        return v or []


def merge(ctx: JobContext) -> ConversionResult:
    params: MergeParams = ctx.params
    excluded = set(params.excluded_pages)

    writer = PdfWriter()
    global_index = 0
    kept = 0
    for f in ctx.inputs:
        try:
            reader = open_pdf(f.data)
        except InvalidInput:
            logger.warning("merge: skipping unreadable file %s", f.name)
            continue
        for page in reader.pages:
            index = global_index
            global_index += 1
            if index in excluded:
                continue
            try:
                writer.add_page(page)
            except Exception as e:
                logger.warning("merge: skipping page %d of %s: %s", index, f.name, e)
                continue
            kept += 1

    if not kept:
        raise InvalidInput("One or more files are corrupted or not valid PDF documents.")

    return ConversionResult(
        outputs=[Output("merged-document.pdf", write_pdf(writer))],
        item_count=kept,
    )


# ----------------------------
# Split
# ----------------------------
class SplitParams(Params):
    split_option: Literal["all-pages", "custom-range"] = Field("all-pages", alias="splitOption")
    page_range: str = Field("", alias="pageRange")


def split(ctx: JobContext) -> ConversionResult:
    params: SplitParams = ctx.params
    reader = open_pdf(ctx.first.data)
    total = len(reader.pages)
    if total == 1:
        raise InvalidInput("PDF has only one page. Nothing to split.")

    outputs: List[Output] = []
    if params.split_option == "all-pages":
        for i in range(total):
            w = PdfWriter()
            w.add_page(reader.pages[i])
            outputs.append(Output(f"page_{i + 1}.pdf", write_pdf(w)))
    else:
        for start, end in parse_page_groups(params.page_range, total):
            w = PdfWriter()
            for i in range(start - 1, end):
                w.add_page(reader.pages[i])
            name = f"page_{start}.pdf" if start == end else f"pages_{start}-{end}.pdf"
            outputs.append(Output(name, write_pdf(w)))

    if not outputs:
        raise InvalidInput("No valid pages to split. Check your page range.")
    return ConversionResult(outputs=outputs, archive_name="split-pages.zip")


# ----------------------------
# Compress
# ----------------------------
class CompressParams(Params):
    level: Literal["basic", "recommended", "strong", "extreme"] = Field("recommended", alias="compressionLevel")

    @field_validator("level", mode="before")
    @classmethod
    def _known_level(cls, v):
        # unknown levels, "screen" included, get the light profile
        v = str(v or "").strip().lower()
        return v if v in COMPRESSION_LEVELS else "recommended"


def compress(ctx: JobContext) -> ConversionResult:
    params: CompressParams = ctx.params
    f = ctx.first
    open_document(f.data).close()

    src = ctx.workspace.write("input.pdf", f.data)
    outcome = ctx.backends["compress"].invoke(ctx.workspace, src, level=params.level)
    data = outcome.output.read_bytes()

    original_size = f.size
    if len(data) >= original_size:
        logger.info("compress: output (%d) not smaller than input (%d), returning original", len(data), original_size)
        data = f.data

    ratio = (original_size - len(data)) / original_size * 100 if original_size else 0.0
    return ConversionResult(
        outputs=[Output(f"compressed-{f.name or 'document.pdf'}", data)],
        headers={
            "X-Original-Size": str(original_size),
            "X-Compressed-Size": str(len(data)),
            "X-Compression-Ratio": f"{ratio:.1f}",
            "X-Compression-Backend": outcome.backend,
        },
    )


# ----------------------------
# Rotate / organize / remove / extract / crop
# ----------------------------
class RotateParams(Params):
    rotation: int = 90
    pages: str = "all"

    @field_validator("rotation")
    @classmethod
    def _right_angle(cls, v):
        if v % 90:
            raise ValueError("rotation must be a multiple of 90")
        return v % 360


def rotate(ctx: JobContext) -> ConversionResult:
    params: RotateParams = ctx.params
    reader = open_pdf(ctx.first.data)
    total = len(reader.pages)

    selection = params.pages if params.pages in ("all", "odd", "even") else "custom"
    indices = set(select_pages(selection, total, custom=params.pages))

    writer = PdfWriter()
    for i, page in enumerate(reader.pages):
        if i in indices:
            set_rotation(page, params.rotation)
        writer.add_page(page)

    return ConversionResult(
        outputs=[Output(f"rotated-{pdf_stem(ctx.first.name)}.pdf", write_pdf(writer))],
        item_count=len(indices),
    )


class PageOperation(BaseModel):
    original_page_index: int = Field(alias="originalPageIndex")
    rotation: int = 0


class OrganizeParams(Params):
    page_operations: List[PageOperation] = Field(alias="pageOperations")

    @field_validator("page_operations", mode="before")
    @classmethod
    def _parse(cls, v):
        return json_field(v, "Invalid page operations format.")


def organize(ctx: JobContext) -> ConversionResult:
    params: OrganizeParams = ctx.params
    reader = open_pdf(ctx.first.data)
    total = len(reader.pages)

    writer = PdfWriter()
    count = 0
    for op in params.page_operations:
        if not 0 <= op.original_page_index < total:
            continue
        page = writer.add_page(reader.pages[op.original_page_index])
        if op.rotation and op.rotation % 90 == 0:
            set_rotation(page, op.rotation % 360)
        count += 1

    if not count:
        raise InvalidInput("No valid pages in page operations.")
    return ConversionResult(
        outputs=[Output(f"organized-{ctx.first.name or 'document.pdf'}", write_pdf(writer))],
        item_count=count,
    )


class RemovePagesParams(Params):
    pages_to_remove: str = Field("", alias="pagesToRemove")


def remove_pages(ctx: JobContext) -> ConversionResult:
    params: RemovePagesParams = ctx.params
    if not params.pages_to_remove.strip():
        raise InvalidInput("Please specify which pages to remove.")

    reader = open_pdf(ctx.first.data)
    total = len(reader.pages)
    if total == 1:
        raise InvalidInput("Cannot remove pages from a single-page PDF.")

    doomed = parse_page_range(
        params.pages_to_remove, total, descending=True,
        empty_message="No valid pages specified for removal.",
    )
    if len(doomed) >= total:
        raise InvalidInput("Cannot remove all pages from the PDF.")

    doomed_set = set(doomed)
    writer = PdfWriter()
    for i, page in enumerate(reader.pages):
        if i not in doomed_set:
            writer.add_page(page)

    return ConversionResult(
        outputs=[Output(f"removed-pages-{ctx.first.name or 'document.pdf'}", write_pdf(writer))],
        item_count=total - len(doomed),
    )


class ExtractPagesParams(Params):
    pages_to_extract: str = Field("", alias="pagesToExtract")


def extract_pages(ctx: JobContext) -> ConversionResult:
    params: ExtractPagesParams = ctx.params
    if not params.pages_to_extract.strip():
        raise InvalidInput("Please specify which pages to extract.")

    reader = open_pdf(ctx.first.data)
    indices = parse_page_range(
        params.pages_to_extract, len(reader.pages),
        empty_message="No valid pages specified for extraction.",
    )

    writer = PdfWriter()
    for i in indices:
        writer.add_page(reader.pages[i])
    return ConversionResult(
        outputs=[Output(f"extracted-pages-{pdf_stem(ctx.first.name)}.pdf", write_pdf(writer))],
        item_count=len(indices),
    )


class CropBox(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    page_selection: str = Field("all", alias="pageSelection")
    selected_pages: List[int] = Field(default_factory=list, alias="selectedPages")


class CropParams(Params):
    crop_data: CropBox = Field(alias="cropData")

    @field_validator("crop_data", mode="before")
    @classmethod
    def _parse(cls, v):
        return json_field(v, "Invalid crop data format.")


def crop(ctx: JobContext) -> ConversionResult:
    """
    Crop coordinates arrive in top-left origin (as drawn in a browser) and
    are flipped into PDF space per page.
    """
    box: CropBox = ctx.params.crop_data
    reader = open_pdf(ctx.first.data)
    total = len(reader.pages)

    if box.page_selection == "all":
        targets = list(range(total))
    else:
        targets = [i for i in box.selected_pages if 0 <= i < total]

    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)

    cropped = 0
    for i in targets:
        page = writer.pages[i]
        media = page.mediabox
        left, bottom = float(media.left), float(media.bottom)
        page_height = float(media.height)
        y0 = page_height - box.y - box.height
        page.cropbox = RectangleObject([
            left + box.x,
            bottom + y0,
            left + box.x + box.width,
            bottom + y0 + box.height,
        ])
        cropped += 1

    if not cropped:
        raise InvalidInput("No valid pages selected for cropping.")
    return ConversionResult(outputs=[Output("cropped.pdf", write_pdf(writer))], item_count=cropped)


# ----------------------------
# Stamping (PyMuPDF)
# ----------------------------
class PageNumberParams(Params):
    position: str = "bottom-right"
    format: str = "{page}"
    font_size: float = Field(12, alias="fontSize", gt=0)
    font_color: str = Field("#000000", alias="fontColor")
    font_family: str = Field("Helvetica", alias="fontFamily")
    start_page: int = Field(1, alias="startPage")
    margin_x: float = Field(50, alias="marginX")
    margin_y: float = Field(50, alias="marginY")
    opacity: float = Field(1.0, ge=0, le=1)

    @field_validator("format")
    @classmethod
    def _legacy(cls, v):
        return "{page}" if v == "number" else v


def _measure(fontname: str):
    return lambda text, size: fitz.get_text_length(text, fontname=fontname, fontsize=size)


def add_page_numbers(ctx: JobContext) -> ConversionResult:
    params: PageNumberParams = ctx.params
    fontname = FONTS.get(params.font_family, "helv")
    color = hex_to_rgb(params.font_color)
    measure = _measure(fontname)

    numbered = 0
    with open_document(ctx.first.data) as doc:
        total = doc.page_count
        for index, page in enumerate(doc):
            text = params.format.replace("{page}", str(index + params.start_page)).replace("{total}", str(total))
            w, h = page.rect.width, page.rect.height

            size, text_width = fit_font_size(text, params.font_size, w, measure)
            x, y = anchor_position(params.position, w, h, text_width, size, params.margin_x, params.margin_y)

            try:
                page.insert_text(
                    (x, h - y), text,
                    fontsize=size, fontname=fontname, color=color, fill_opacity=params.opacity, stroke_opacity=params.opacity,
                )
            except Exception as e:
                logger.warning("page numbers: page %d failed (%s), retrying with defaults", index + 1, e)
                try:
                    page.insert_text((max(10, x), h - max(10, y)), text, fontsize=12)
                except Exception as e2:
                    logger.warning("page numbers: skipping page %d: %s", index + 1, e2)
                    continue
            numbered += 1
        data = doc.tobytes(garbage=3, deflate=True)

    return ConversionResult(
        outputs=[Output(f"{pdf_stem(ctx.first.name)}_with_page_numbers.pdf", data)],
        item_count=numbered,
    )


class WatermarkParams(Params):
    text: str = "WATERMARK"
    font_size: float = Field(48, alias="fontSize", gt=0)
    font_color: str = Field("#666666", alias="fontColor")
    font_family: str = Field("Helvetica", alias="fontFamily")
    opacity: float = Field(0.15, ge=0, le=1)
    watermark_type: Literal["tilted", "center"] = Field("tilted", alias="watermarkType")

    @field_validator("text")
    @classmethod
    def _not_blank(cls, v):
        if not v.strip():
            raise ValueError("Please provide watermark text.")
        return v


def add_watermark(ctx: JobContext) -> ConversionResult:
    params: WatermarkParams = ctx.params
    fontname = FONTS.get(params.font_family, "helv")
    color = hex_to_rgb(params.font_color)
    text, size = params.text, params.font_size
    text_width = fitz.get_text_length(text, fontname=fontname, fontsize=size)
    tilt = fitz.Matrix(45)

    def stamp(page, x, y):
        point = fitz.Point(x, page.rect.height - y)
        page.insert_text(
            point, text,
            fontsize=size, fontname=fontname, color=color,
            fill_opacity=params.opacity, stroke_opacity=params.opacity, morph=(point, tilt),
        )

    with open_document(ctx.first.data) as doc:
        for index, page in enumerate(doc):
            w, h = page.rect.width, page.rect.height
            try:
                if params.watermark_type == "center":
                    stamp(page, (w - text_width) / 2, h / 2)
                else:
                    for x, y in watermark_tiles(w, h, text_width, size):
                        stamp(page, x, y)
            except Exception as e:
                logger.warning("watermark: tiling failed on page %d (%s), using single stamp", index + 1, e)
                try:
                    stamp(page, (w - text_width) / 2, h / 2)
                except Exception as e2:
                    logger.warning("watermark: skipping page %d: %s", index + 1, e2)
        data = doc.tobytes(garbage=3, deflate=True)

    return ConversionResult(outputs=[Output(f"{pdf_stem(ctx.first.name)}_watermarked.pdf", data)])


# ----------------------------
# Inspection
# ----------------------------
def pdf_info(name: str, data: bytes) -> dict:
    reader = open_pdf(data)
    pages = []
    for i, page in enumerate(reader.pages):
        box = page.mediabox
        pages.append({
            "pageNumber": i + 1,
            "width": float(box.width),
            "height": float(box.height),
            "rotation": int(page.get("/Rotate", 0) or 0),
        })
    return {
        "pageCount": len(pages),
        "pages": pages,
        "fileName": name,
        "fileSize": len(data),
    }


def thumbnail(data: bytes, page_number: int = 1, width: int = 200) -> bytes:
    with open_document(data) as doc:
        if not 1 <= page_number <= doc.page_count:
            raise InvalidInput(f"Page {page_number} does not exist. The PDF has {doc.page_count} page(s).")
        page = doc.load_page(page_number - 1)
        zoom = max(0.05, min(width, 2000) / page.rect.width)
        pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return pix.tobytes("png")
