# pdfforge/backends.py
import html
import logging
import re
import ssl
import subprocess
from dataclasses import dataclass
from html.parser import HTMLParser
from pathlib import Path
from typing import Any, List, Optional, Sequence

import certifi
import fitz  # PyMuPDF
import httpx
from docx import Document
from pptx import Presentation

from .config import Settings
from .errors import BackendUnavailable, ConversionError, InvalidInput
from .workspace import WorkspaceHandle

logger = logging.getLogger(__name__)

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

INSTALL_HINTS = {
    "soffice": "LibreOffice is not installed. On Debian/Ubuntu: sudo apt-get install libreoffice",
    "gs": "Ghostscript is not installed. On Debian/Ubuntu: sudo apt-get install ghostscript",
    "pdftoppm": (
        "pdftoppm not found. Please install Poppler (poppler-utils). "
        "On Debian/Ubuntu: sudo apt-get install poppler-utils; on macOS: brew install poppler"
    ),
    "chromium": "Chromium is not installed. On Debian/Ubuntu: sudo apt-get install chromium",
}


def run_tool(cmd: Sequence[str], timeout: float, hint_key: str = "") -> subprocess.CompletedProcess:
    """
    Run an external tool. A missing binary or a timeout is BackendUnavailable;
    a non-zero exit is a plain ConversionError with the tool output as detail.
    """
    tool = Path(cmd[0]).name
    try:
        p = subprocess.run(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise BackendUnavailable(INSTALL_HINTS.get(hint_key or tool, f"{tool} is not installed."))
    except subprocess.TimeoutExpired:
        raise BackendUnavailable(f"{tool} did not finish within {timeout:g} seconds.")

    if p.returncode != 0:
        raise ConversionError(detail=(p.stderr or p.stdout or f"{tool} exited with {p.returncode}").strip())
    return p


# ----------------------------
# Chain
# ----------------------------
@dataclass
class BackendOutcome:
    backend: str
    output: Any
    fell_back: bool = False


class DocumentBackend:
    """One transformation capability. Subclasses implement `invoke`."""

    name = "backend"

    def invoke(self, ws: WorkspaceHandle, source: Any, **options) -> Any:
        raise NotImplementedError


class BackendChain:
    """
    Ordered backends: the first is primary, the rest are fallbacks tried in
    turn. The first success wins. When all fail, the most specific
    ConversionError raised along the way is re-raised.
    """

    def __init__(self, name: str, backends: Sequence[DocumentBackend]):
        self.name = name
        self.backends = list(backends)

    def invoke(self, ws: WorkspaceHandle, source: Any, **options) -> BackendOutcome:
        errors: List[Exception] = []
        for i, backend in enumerate(self.backends):
            try:
                output = backend.invoke(ws, source, **options)
            except Exception as e:
                logger.warning("%s: backend %s failed: %s", self.name, backend.name, getattr(e, "detail", None) or e)
                errors.append(e)
                continue
            if i:
                logger.info("%s: fell back to %s", self.name, backend.name)
            return BackendOutcome(backend=backend.name, output=output, fell_back=i > 0)

        if not errors:
            raise BackendUnavailable(f"No backend configured for {self.name}.")
        typed = [e for e in errors if isinstance(e, ConversionError)]
        raise typed[-1] if typed else errors[-1]


# ----------------------------
# Office
# ----------------------------
class LibreOfficeBackend(DocumentBackend):
    name = "libreoffice"

    def __init__(self, settings: Settings):
        self.bin = settings.soffice_bin
        self.timeout = settings.backend_timeout_s

    def invoke(self, ws: WorkspaceHandle, source: Path, **options) -> Path:
        input_path = Path(source).resolve()
        out_dir = ws.subdir("lo-out")
        profile = ws.subdir("lo-profile")

        cmd = [
            self.bin,
            f"-env:UserInstallation={profile.as_uri()}",
            "--headless",
            "--nologo",
            "--nolockcheck",
            "--nodefault",
            "--nofirststartwizard",
            "--convert-to", "pdf",
            "--outdir", str(out_dir),
            str(input_path),
        ]
        run_tool(cmd, self.timeout, hint_key="soffice")

        expected = out_dir / f"{input_path.stem}.pdf"
        if expected.exists():
            return expected

        pdfs = sorted(out_dir.glob("*.pdf"), key=lambda x: x.stat().st_mtime, reverse=True)
        if not pdfs:
            raise ConversionError(detail="No PDF produced by LibreOffice")
        return pdfs[0]


class DocxTextBackend(DocumentBackend):
    """Text-only rendering of a .docx when LibreOffice is unavailable."""

    name = "docx-text"

    def invoke(self, ws: WorkspaceHandle, source: Path, **options) -> Path:
        doc = Document(str(source))
        paragraphs = [p.text for p in doc.paragraphs]
        for table in doc.tables:
            for row in table.rows:
                paragraphs.append(" | ".join(cell.text.strip() for cell in row.cells))
        out = ws.path(f"{Path(source).stem}.pdf")
        write_text_pdf(paragraphs, out)
        return out


class PptxTextBackend(DocumentBackend):
    """One section of text per slide."""

    name = "pptx-text"

    def invoke(self, ws: WorkspaceHandle, source: Path, **options) -> Path:
        prs = Presentation(str(source))
        paragraphs: List[str] = []
        for n, slide in enumerate(prs.slides, start=1):
            paragraphs.append(f"## Slide {n}")
            for shape in slide.shapes:
                if shape.has_text_frame:
                    paragraphs.extend(p.text for p in shape.text_frame.paragraphs if p.text.strip())
        out = ws.path(f"{Path(source).stem}.pdf")
        write_text_pdf(paragraphs, out)
        return out


# ----------------------------
# Compression
# ----------------------------
COMPRESSION_LEVELS = {
    # level: (PDFSETTINGS, compatibility, extra switches)
    "basic": ("/prepress", "1.7", [
        "-dDownsampleColorImages=false",
        "-dDownsampleGrayImages=false",
        "-dDownsampleMonoImages=false",
        "-dAutoFilterColorImages=false",
        "-dColorImageFilter=/FlateEncode",
        "-dAutoFilterGrayImages=false",
        "-dGrayImageFilter=/FlateEncode",
    ]),
    "recommended": ("/prepress", "1.7", [
        "-dDownsampleColorImages=false",
        "-dColorImageResolution=400",
        "-dGrayImageResolution=400",
        "-dJPEGQ=95",
    ]),
    "strong": ("/printer", "1.6", [
        "-dDownsampleColorImages=true",
        "-dDownsampleGrayImages=true",
        "-dColorImageResolution=300",
        "-dGrayImageResolution=300",
        "-dJPEGQ=85",
    ]),
    "extreme": ("/ebook", "1.4", [
        "-dDownsampleColorImages=true",
        "-dDownsampleGrayImages=true",
        "-dColorImageResolution=150",
        "-dGrayImageResolution=150",
        "-dJPEGQ=70",
    ]),
}


class GhostscriptCompressor(DocumentBackend):
    name = "ghostscript"

    def __init__(self, settings: Settings):
        self.bin = settings.gs_bin
        self.timeout = settings.backend_timeout_s

    def invoke(self, ws: WorkspaceHandle, source: Path, level: str = "recommended", **options) -> Path:
        preset, compat, extra = COMPRESSION_LEVELS.get(level, COMPRESSION_LEVELS["recommended"])
        out_pdf = ws.path("compressed-gs.pdf")
        cmd = [
            self.bin,
            "-sDEVICE=pdfwrite",
            f"-dCompatibilityLevel={compat}",
            f"-dPDFSETTINGS={preset}",
            *extra,
            "-dNOPAUSE",
            "-dBATCH",
            "-dQUIET",
            f"-sOutputFile={out_pdf}",
            str(Path(source).resolve()),
        ]
        run_tool(cmd, self.timeout, hint_key="gs")
        if not out_pdf.exists():
            raise ConversionError(detail="Compressed PDF not produced")
        return out_pdf


class PyMuPDFCompressor(DocumentBackend):
    """Lossless rewrite: drops unused objects and deflates streams."""

    name = "pymupdf"

    def invoke(self, ws: WorkspaceHandle, source: Path, **options) -> Path:
        out_pdf = ws.path("compressed-mupdf.pdf")
        with open_document(source) as doc:
            doc.save(str(out_pdf), garbage=4, deflate=True, clean=True)
        return out_pdf


# ----------------------------
# Rasterizing
# ----------------------------
def _page_sort_key(p: Path) -> int:
    m = re.search(r"(\d+)$", p.stem)
    return int(m.group(1)) if m else 0


class PdftoppmRasterizer(DocumentBackend):
    name = "pdftoppm"

    def __init__(self, settings: Settings):
        self.bin = settings.pdftoppm_bin
        self.timeout = settings.backend_timeout_s

    def invoke(self, ws: WorkspaceHandle, source: Path, dpi: int = 150, fmt: str = "png",
               quality: int = 90, **options) -> List[Path]:
        out_dir = ws.subdir("raster")
        if fmt == "jpeg":
            flags = ["-jpeg", "-jpegopt", f"quality={quality}"]
        else:
            flags = ["-png"]
        cmd = [self.bin, *flags, "-r", str(dpi), str(Path(source).resolve()), str(out_dir / "page")]
        run_tool(cmd, self.timeout, hint_key="pdftoppm")

        ext = "jpg" if fmt == "jpeg" else "png"
        images = sorted(out_dir.glob(f"page*.{ext}"), key=_page_sort_key)
        if not images:
            raise ConversionError(detail="No images were produced from the PDF")
        return images


class PyMuPDFRasterizer(DocumentBackend):
    name = "pymupdf"

    def invoke(self, ws: WorkspaceHandle, source: Path, dpi: int = 150, fmt: str = "png",
               quality: int = 90, **options) -> List[Path]:
        out_dir = ws.subdir("raster")
        zoom = dpi / 72.0
        mat = fitz.Matrix(zoom, zoom)

        images: List[Path] = []
        with open_document(source) as doc:
            for i in range(doc.page_count):
                pix = doc.load_page(i).get_pixmap(matrix=mat, alpha=False)
                if fmt == "jpeg":
                    out = out_dir / f"page-{i + 1}.jpg"
                    pix.save(str(out), jpg_quality=quality)
                else:
                    out = out_dir / f"page-{i + 1}.png"
                    pix.save(str(out))
                images.append(out)
        return images


# ----------------------------
# Web pages
# ----------------------------
class ChromiumPrinter(DocumentBackend):
    """Full-fidelity page render via headless Chromium's print-to-pdf."""

    name = "chromium"

    def __init__(self, settings: Settings):
        self.bin = settings.chromium_bin
        self.timeout = settings.backend_timeout_s

    def invoke(self, ws: WorkspaceHandle, source: str, **options) -> Path:
        out_pdf = ws.path("screenshot.pdf")
        profile = ws.subdir("chromium-profile")
        cmd = [
            self.bin,
            "--headless",
            "--disable-gpu",
            "--no-sandbox",
            f"--user-data-dir={profile}",
            "--no-pdf-header-footer",
            f"--print-to-pdf={out_pdf}",
            source,
        ]
        run_tool(cmd, self.timeout, hint_key="chromium")
        if not out_pdf.exists() or out_pdf.stat().st_size == 0:
            raise ConversionError(detail="Chromium produced no PDF")
        return out_pdf


class _TextExtractor(HTMLParser):
    BLOCK = {"p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article", "pre"}
    SKIP = {"script", "style", "noscript", "template", "svg"}

    def __init__(self):
        super().__init__()
        self.blocks: List[str] = []
        self.title = ""
        self._buf: List[str] = []
        self._skip = 0
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        if tag == "title":
            self._in_title = True
        if tag in self.SKIP:
            self._skip += 1
        elif tag in self.BLOCK:
            self._flush()

    def handle_endtag(self, tag):
        if tag == "title":
            self._in_title = False
        if tag in self.SKIP:
            self._skip = max(0, self._skip - 1)
        elif tag in self.BLOCK:
            self._flush()

    def handle_data(self, data):
        if self._in_title:
            self.title += data.strip()
            return
        if not self._skip:
            self._buf.append(data)

    def _flush(self):
        text = " ".join("".join(self._buf).split())
        if text:
            self.blocks.append(text)
        self._buf = []

    def close(self):
        super().close()
        self._flush()


def extract_html_text(markup: str):
    """Return (title, paragraphs) from an HTML document."""
    parser = _TextExtractor()
    parser.feed(markup)
    parser.close()
    return parser.title, parser.blocks


class HtmlTextRenderer(DocumentBackend):
    """Fetch the page and lay out its readable text."""

    name = "text-extraction"

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.timeout = min(30, settings.backend_timeout_s)
        self.transport = transport

    def fetch(self, url: str) -> str:
        verify = ssl.create_default_context(cafile=certifi.where())
        try:
            with httpx.Client(
                timeout=self.timeout,
                follow_redirects=True,
                verify=verify,
                transport=self.transport,
                headers={"User-Agent": BROWSER_UA},
            ) as client:
                r = client.get(url)
        except httpx.HTTPError as e:
            raise InvalidInput(
                "Failed to process the webpage. Please check the URL and try again.",
                detail=repr(e),
            )
        if r.status_code >= 400:
            raise InvalidInput(
                "Failed to process the webpage. Please check the URL and try again.",
                detail=f"HTTP {r.status_code}",
            )
        return r.text

    def invoke(self, ws: WorkspaceHandle, source: str, **options) -> Path:
        title, paragraphs = extract_html_text(self.fetch(source))
        if title:
            paragraphs.insert(0, f"# {title}")
        out = ws.path("webpage.pdf")
        write_text_pdf(paragraphs or ["(This page has no readable text.)"], out, header=f"Source: {source}")
        return out


# ----------------------------
# Shared PyMuPDF helpers
# ----------------------------
A4 = fitz.paper_rect("a4")
TEXT_MARGIN = 50


def open_document(source, filetype: Optional[str] = "pdf") -> fitz.Document:
    """Open a document from a path or bytes; unreadable input is InvalidInput."""
    try:
        if isinstance(source, (bytes, bytearray)):
            doc = fitz.open(stream=bytes(source), filetype=filetype)
        else:
            doc = fitz.open(str(source), filetype=filetype)
    except Exception as e:
        raise InvalidInput("The uploaded file is corrupted or not a valid PDF document.", detail=repr(e))
    if doc.page_count == 0:
        doc.close()
        raise InvalidInput("The PDF has no pages.")
    return doc


def _paragraph_html(text: str) -> str:
    if text.startswith("## "):
        return f"<h3>{html.escape(text[3:])}</h3>"
    if text.startswith("# "):
        return f"<h2>{html.escape(text[2:])}</h2>"
    return f"<p>{html.escape(text)}</p>"


def write_text_pdf(paragraphs: Sequence[str], out_path: Path, header: Optional[str] = None) -> Path:
    """
    Flow paragraphs onto A4 pages. Lines starting with "# " or "## " become
    headings. Every page gets a "Page i of n" footer, the first page the
    optional header line.
    """
    body = "".join(_paragraph_html(p) for p in paragraphs if p and p.strip())
    story = fitz.Story(html=f"<body style='font-family: sans-serif; font-size: 11px'>{body}</body>")
    where = A4 + (TEXT_MARGIN, TEXT_MARGIN + (20 if header else 0), -TEXT_MARGIN, -TEXT_MARGIN)

    tmp = Path(out_path).with_suffix(".story.pdf")
    writer = fitz.DocumentWriter(str(tmp))
    more = 1
    while more:
        device = writer.begin_page(A4)
        more, _ = story.place(where)
        story.draw(device)
        writer.end_page()
        where = A4 + (TEXT_MARGIN, TEXT_MARGIN, -TEXT_MARGIN, -TEXT_MARGIN)
    writer.close()

    doc = fitz.open(str(tmp))
    total = doc.page_count
    for i, page in enumerate(doc, start=1):
        if header and i == 1:
            page.insert_text((TEXT_MARGIN, TEXT_MARGIN - 10), header[:120], fontsize=9, color=(0.4, 0.4, 0.4))
        footer = f"Page {i} of {total}"
        width = fitz.get_text_length(footer, fontsize=9)
        page.insert_text(((page.rect.width - width) / 2, page.rect.height - 25), footer, fontsize=9, color=(0.4, 0.4, 0.4))
    doc.save(str(out_path), garbage=3, deflate=True)
    doc.close()
    tmp.unlink()
    return Path(out_path)


def default_chains(settings: Settings) -> dict:
    """Backend chains by name, primary first."""
    return {
        "office": BackendChain("office", [LibreOfficeBackend(settings)]),
        "word": BackendChain("word", [LibreOfficeBackend(settings), DocxTextBackend()]),
        "powerpoint": BackendChain("powerpoint", [LibreOfficeBackend(settings), PptxTextBackend()]),
        "compress": BackendChain("compress", [GhostscriptCompressor(settings), PyMuPDFCompressor()]),
        "raster": BackendChain("raster", [PdftoppmRasterizer(settings), PyMuPDFRasterizer()]),
        "html": BackendChain("html", [ChromiumPrinter(settings), HtmlTextRenderer(settings)]),
        "html-text": BackendChain("html-text", [HtmlTextRenderer(settings)]),
    }
