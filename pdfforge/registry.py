# pdfforge/registry.py
import logging
from typing import Any, Dict, List, Mapping, Optional

from . import convert_ops, pdf_ops
from .backends import default_chains
from .blobstore import BlobStore
from .config import Settings
from .jobs import ConversionJob, ConversionRequest, ConversionResult, InputFile, OperationSpec
from .workspace import TempWorkspace

logger = logging.getLogger(__name__)

PDF_EXT = frozenset({".pdf"})
PDF_MIME = frozenset({"application/pdf"})
IMAGE_EXT = frozenset({".jpg", ".jpeg", ".png", ".webp"})
IMAGE_MIME = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})
WORD_EXT = frozenset({".doc", ".docx"})
WORD_MIME = frozenset({
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
})
PPT_EXT = frozenset({".ppt", ".pptx"})
PPT_MIME = frozenset({
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
})
EXCEL_EXT = frozenset({".xls", ".xlsx"})
EXCEL_MIME = frozenset({
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
})
OFFICE_EXT = WORD_EXT | PPT_EXT | EXCEL_EXT

# alternate form keys -> canonical key
SYNONYMS = {
    "formatString": "format",
    "size": "fontSize",
    "color": "fontColor",
    "font": "fontFamily",
    "startNumber": "startPage",
}
FILE_FIELDS = ("files", "file")

NOT_A_PDF = "File must be a valid PDF document."


def _pdf_op(name, handler, params, **kw) -> OperationSpec:
    kw.setdefault("extensions", PDF_EXT)
    kw.setdefault("mime_types", PDF_MIME)
    kw.setdefault("type_message", NOT_A_PDF)
    kw.setdefault("missing_message", "Please upload a PDF file.")
    return OperationSpec(name=name, handler=handler, params_model=params, **kw)


OPERATIONS: Dict[str, OperationSpec] = {
    spec.name: spec
    for spec in [
        _pdf_op(
            "merge", pdf_ops.merge, pdf_ops.MergeParams,
            max_files=None,
            missing_message="Please upload at least 1 PDF file to merge.",
            type_message="All files must be valid PDF documents.",
            failure_message="Failed to merge PDF files. Please try again.",
        ),
        _pdf_op(
            "split", pdf_ops.split, pdf_ops.SplitParams,
            upload=True, always_archive=True, archive_name="split-pages.zip",
            missing_message="Please upload a PDF file to split.",
            failure_message="Failed to split PDF. Please try again.",
        ),
        _pdf_op(
            "compress", pdf_ops.compress, pdf_ops.CompressParams,
            upload=True,
            missing_message="Please upload a PDF file to compress.",
            failure_message="Failed to compress PDF. Please try again with a different compression level.",
        ),
        _pdf_op(
            "rotate", pdf_ops.rotate, pdf_ops.RotateParams,
            upload=True,
            missing_message="Please upload a PDF file to rotate.",
            failure_message="Failed to rotate PDF. Please try again.",
        ),
        _pdf_op(
            "add-watermark", pdf_ops.add_watermark, pdf_ops.WatermarkParams,
            failure_message="Failed to add text watermark. Please try again.",
        ),
        _pdf_op(
            "add-page-numbers", pdf_ops.add_page_numbers, pdf_ops.PageNumberParams,
            upload=True,
            failure_message="Failed to add page numbers. Please try again.",
        ),
        _pdf_op(
            "crop", pdf_ops.crop, pdf_ops.CropParams,
            missing_message="No file provided",
            failure_message="Failed to crop PDF.",
        ),
        _pdf_op(
            "organize", pdf_ops.organize, pdf_ops.OrganizeParams,
            missing_message="Please upload a PDF file to organize.",
            failure_message="Failed to organize PDF. Please try again with a valid PDF file.",
        ),
        _pdf_op(
            "remove-pages", pdf_ops.remove_pages, pdf_ops.RemovePagesParams,
            failure_message="Failed to remove pages from PDF. Please try again.",
        ),
        _pdf_op(
            "extract-pages", pdf_ops.extract_pages, pdf_ops.ExtractPagesParams,
            upload=True,
            failure_message="Failed to extract pages from PDF. Please try again.",
        ),
        OperationSpec(
            name="jpg-to-pdf",
            handler=convert_ops.images_to_pdf,
            params_model=convert_ops.ImagesToPdfParams,
            extensions=IMAGE_EXT,
            mime_types=IMAGE_MIME,
            max_files=None,
            missing_message="Please upload at least one image file.",
            type_message="All files must be valid image files (JPG, PNG, WebP).",
            failure_message="Failed to convert images to PDF. Please try again.",
        ),
        _pdf_op(
            "pdf-to-jpg", convert_ops.pdf_to_images, convert_ops.PdfToImagesParams,
            upload=True, archive_name="pdf-images.zip",
            missing_message="Please upload a PDF file to convert.",
            failure_message="Failed to convert PDF to images. Please try again.",
        ),
        _pdf_op(
            "pdf-to-word", convert_ops.pdf_to_word, convert_ops.PdfToOfficeParams,
            missing_message="Please upload a PDF file to convert.",
            failure_message="Failed to convert PDF to Word. Please try again.",
        ),
        _pdf_op(
            "pdf-to-powerpoint", convert_ops.pdf_to_powerpoint, convert_ops.PdfToOfficeParams,
            missing_message="Please upload a PDF file to convert.",
            failure_message="Failed to process PDF to PowerPoint conversion. Please try again.",
        ),
        OperationSpec(
            name="word-to-pdf",
            handler=convert_ops.office_handler("word", "{stem}_converted.pdf"),
            params_model=convert_ops.NoParams,
            extensions=WORD_EXT,
            mime_types=WORD_MIME,
            missing_message="No file uploaded",
            type_message="Please upload a Word document (.doc or .docx)",
            failure_message="Failed to convert Word document to PDF. Please try again.",
        ),
        OperationSpec(
            name="powerpoint-to-pdf",
            handler=convert_ops.office_handler("powerpoint", "{stem}.pdf"),
            params_model=convert_ops.NoParams,
            extensions=PPT_EXT,
            mime_types=PPT_MIME,
            missing_message="Please upload a PowerPoint file to convert.",
            type_message="File must be a valid PowerPoint file (.ppt or .pptx).",
            failure_message="Failed to convert PowerPoint to PDF. Please ensure the file is not corrupted and try again.",
        ),
        OperationSpec(
            name="excel-to-pdf",
            handler=convert_ops.office_handler("office", "{stem}-converted-{ts}.pdf"),
            params_model=convert_ops.NoParams,
            extensions=EXCEL_EXT,
            mime_types=EXCEL_MIME,
            missing_message="No Excel file provided",
            type_message="Please upload a valid Excel file (.xlsx or .xls)",
            failure_message="Failed to convert Excel file to PDF. Please ensure the file is a valid Excel format.",
        ),
        OperationSpec(
            name="office-to-pdf",
            handler=convert_ops.office_handler("office", "{stem}.pdf"),
            params_model=convert_ops.NoParams,
            extensions=OFFICE_EXT,
            mime_types=WORD_MIME | PPT_MIME | EXCEL_MIME,
            missing_message="No filename provided",
            type_message="Unsupported file type. Supported: DOC, DOCX, PPT, PPTX, XLS, XLSX",
            failure_message="Conversion failed. Please try again.",
        ),
        OperationSpec(
            name="html-to-pdf",
            handler=convert_ops.html_to_pdf,
            params_model=convert_ops.HtmlToPdfParams,
            min_files=0,
            max_files=0,
            upload=True,
            failure_message="Failed to convert webpage to PDF. Please try again.",
        ),
        OperationSpec(
            name="pdf-edit-merge",
            handler=convert_ops.edited_pages_to_pdf,
            params_model=convert_ops.EditedPagesParams,
            min_files=0,
            max_files=0,
            failure_message="Failed to merge PDF pages.",
        ),
    ]
}


def normalize_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Collapse alternate field names onto canonical ones. A canonical key always
    wins over its synonym; blank strings count as absent.
    """
    fields = {k: v for k, v in raw.items() if not (isinstance(v, str) and not v.strip())}
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in FILE_FIELDS:
            continue
        canonical = SYNONYMS.get(key, key)
        if canonical != key and canonical in fields:
            continue
        out[canonical] = value

    margin = out.pop("margin", None)
    if margin is not None:
        out.setdefault("marginX", margin)
        out.setdefault("marginY", margin)
    return out


def build_request(operation: str, fields: Mapping[str, Any], files: Optional[List[InputFile]] = None) -> ConversionRequest:
    return ConversionRequest(operation=operation, inputs=list(files or []), params=normalize_fields(fields))


class JobRegistry:
    """
    Resolves operation names and builds jobs. Backend chains are looked up
    per instance, so they can be swapped without touching the table.
    """

    def __init__(self, settings: Settings, blob_store: Optional[BlobStore] = None, backends: Optional[dict] = None):
        self.settings = settings
        self.blob_store = blob_store
        self.workspace = TempWorkspace(settings.work_dir)
        self.backends = default_chains(settings)
        if backends:
            self.backends.update(backends)
        self.operations = dict(OPERATIONS)

    def get(self, operation: str) -> Optional[OperationSpec]:
        return self.operations.get(operation)

    def job(self, request: ConversionRequest) -> ConversionJob:
        spec = self.operations[request.operation]
        return ConversionJob(
            spec=spec,
            request=request,
            workspace=self.workspace,
            backends=self.backends,
            settings=self.settings,
            blob_store=self.blob_store,
        )

    def run(self, request: ConversionRequest) -> ConversionResult:
        logger.info("Running %s with %d file(s)", request.operation, len(request.inputs))
        return self.job(request).run()
