import io
from pathlib import Path

import fitz
import pytest
from PIL import Image

from pdfforge.config import Settings
from pdfforge.jobs import InputFile


def build_pdf(pages: int = 1, size=(595, 842), label: str = "Page") -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=size[0], height=size[1])
        page.insert_text((72, 72), f"{label} {i + 1}", fontsize=14)
    data = doc.tobytes()
    doc.close()
    return data


def build_image(fmt: str = "PNG", size=(120, 80), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, fmt)
    return buf.getvalue()


def page_texts(data: bytes):
    with fitz.open(stream=data, filetype="pdf") as doc:
        return [page.get_text().strip() for page in doc]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(work_dir=tmp_path / "work", max_upload_mb=5)


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def make_image():
    return build_image


@pytest.fixture
def pdf_file():
    def _make(pages: int = 1, name: str = "doc.pdf", **kw) -> InputFile:
        return InputFile(name=name, content_type="application/pdf", data=build_pdf(pages, **kw))

    return _make
