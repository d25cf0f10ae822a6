import io
import zipfile

import pytest

from pdfforge.backends import BackendChain, DocumentBackend
from pdfforge.blobstore import DisabledBlobStore, MemoryBlobStore, Skipped, Uploaded
from pdfforge.convert_ops import NoParams
from pdfforge.errors import ConversionError, InvalidInput
from pdfforge.jobs import ConversionResult, InputFile, JobStage, OperationSpec, Output
from pdfforge.registry import JobRegistry, build_request, normalize_fields

from conftest import build_pdf, page_texts


class GrowingCompressor(DocumentBackend):
    """Always produces something bigger than its input."""

    name = "fake-gs"

    def invoke(self, ws, source, **options):
        out = ws.path("compressed.pdf")
        out.write_bytes(source.read_bytes() + b"\n%" + b"x" * 4096)
        return out


@pytest.fixture
def store():
    return MemoryBlobStore()


@pytest.fixture
def registry(settings, store):
    return JobRegistry(
        settings,
        blob_store=store,
        backends={"compress": BackendChain("compress", [GrowingCompressor()])},
    )


def pdf(pages, name="doc.pdf", label="Page"):
    return InputFile(name=name, content_type="application/pdf", data=build_pdf(pages, label=label))


def leftovers(settings):
    if not settings.work_dir.exists():
        return []
    return list(settings.work_dir.iterdir())


def count_releases(registry):
    calls = []
    original = registry.workspace.release

    def release(handle):
        calls.append(handle)
        original(handle)

    registry.workspace.release = release
    return calls


def test_merge_keeps_every_page_in_order(registry, settings):
    request = build_request("merge", {}, [pdf(3, "a.pdf", "A"), pdf(2, "b.pdf", "B")])
    result = registry.run(request)

    assert result.filename == "merged-document.pdf"
    assert result.media_type == "application/pdf"
    assert page_texts(result.body) == ["A 1", "A 2", "A 3", "B 1", "B 2"]
    assert result.headers["X-Item-Count"] == "5"
    assert leftovers(settings) == []


def test_merge_excluded_pages_use_global_index(registry):
    request = build_request("merge", {"excludedPages": "0,3"}, [pdf(3, "a.pdf", "A"), pdf(2, "b.pdf", "B")])
    result = registry.run(request)
    assert page_texts(result.body) == ["A 2", "A 3", "B 2"]
    assert result.item_count == 3


def test_merge_skips_unreadable_files(registry):
    junk = InputFile(name="junk.pdf", content_type="application/pdf", data=b"not a pdf at all")
    result = registry.run(build_request("merge", {}, [junk, pdf(2)]))
    assert page_texts(result.body) == ["Page 1", "Page 2"]


def test_merge_with_only_unreadable_files_fails(registry):
    junk = InputFile(name="junk.pdf", content_type="application/pdf", data=b"garbage")
    with pytest.raises(InvalidInput):
        registry.run(build_request("merge", {}, [junk]))


def test_split_custom_range_archives_each_group(registry, store):
    request = build_request("split", {"splitOption": "custom-range", "pageRange": "1-2,4"}, [pdf(5)])
    result = registry.run(request)

    assert result.filename == "split-pages.zip"
    assert result.media_type == "application/zip"
    with zipfile.ZipFile(io.BytesIO(result.body)) as z:
        assert sorted(z.namelist()) == ["page_4.pdf", "pages_1-2.pdf"]
        assert page_texts(z.read("pages_1-2.pdf")) == ["Page 1", "Page 2"]
        assert page_texts(z.read("page_4.pdf")) == ["Page 4"]

    assert isinstance(result.upload, Uploaded)
    assert result.upload.key in store.objects


def test_split_all_pages_is_archived(registry):
    result = registry.run(build_request("split", {}, [pdf(3)]))
    with zipfile.ZipFile(io.BytesIO(result.body)) as z:
        assert sorted(z.namelist()) == ["page_1.pdf", "page_2.pdf", "page_3.pdf"]
    assert result.item_count == 3


def test_split_single_page_is_rejected_and_workspace_released(registry, settings):
    releases = count_releases(registry)
    with pytest.raises(InvalidInput) as exc:
        registry.run(build_request("split", {}, [pdf(1)]))
    assert "only one page" in exc.value.message
    assert len(releases) == 1
    assert leftovers(settings) == []


def test_remove_pages_from_single_page_pdf(registry):
    with pytest.raises(InvalidInput):
        registry.run(build_request("remove-pages", {"pagesToRemove": "1"}, [pdf(1)]))


def test_remove_pages_keeps_the_rest(registry):
    result = registry.run(build_request("remove-pages", {"pagesToRemove": "2,4"}, [pdf(5)]))
    assert page_texts(result.body) == ["Page 1", "Page 3", "Page 5"]
    assert result.filename == "removed-pages-doc.pdf"


def test_remove_all_pages_is_rejected(registry):
    with pytest.raises(InvalidInput):
        registry.run(build_request("remove-pages", {"pagesToRemove": "1-3"}, [pdf(3)]))


def test_compress_returns_original_when_not_smaller(registry):
    original = pdf(2, "report.pdf")
    result = registry.run(build_request("compress", {"compressionLevel": "strong"}, [original]))

    assert result.body == original.data
    assert result.filename == "compressed-report.pdf"
    assert result.headers["X-Original-Size"] == str(original.size)
    assert result.headers["X-Compressed-Size"] == str(original.size)
    assert result.headers["X-Compression-Ratio"] == "0.0"
    assert result.headers["X-Compression-Backend"] == "fake-gs"


def test_validation_happens_before_workspace(registry, settings):
    releases = count_releases(registry)
    text = InputFile(name="notes.txt", content_type="text/plain", data=b"hello")
    job = registry.job(build_request("rotate", {}, [text]))
    with pytest.raises(InvalidInput) as exc:
        job.run()
    assert exc.value.message == "File must be a valid PDF document."
    assert job.stage == JobStage.FAILED
    assert releases == []
    assert not settings.work_dir.exists()


def test_mime_type_alone_is_accepted(registry):
    unnamed = InputFile(name="upload", content_type="application/pdf", data=build_pdf(2))
    result = registry.run(build_request("extract-pages", {"pagesToExtract": "2"}, [unnamed]))
    assert page_texts(result.body) == ["Page 2"]


def test_too_many_files(registry):
    with pytest.raises(InvalidInput):
        registry.run(build_request("rotate", {}, [pdf(1), pdf(1)]))


def test_missing_file_message(registry):
    with pytest.raises(InvalidInput) as exc:
        registry.run(build_request("split", {}, []))
    assert exc.value.message == "Please upload a PDF file to split."


def test_bad_parameter_is_invalid_input(registry):
    with pytest.raises(InvalidInput) as exc:
        registry.run(build_request("rotate", {"rotation": "45"}, [pdf(1)]))
    assert "multiple of 90" in exc.value.message


def test_unexpected_error_is_wrapped_and_workspace_released(registry, settings):
    def explode(ctx):
        ctx.workspace.write("partial.bin", b"half-written")
        raise KeyError("boom")

    registry.operations["explode"] = OperationSpec(
        name="explode", handler=explode, params_model=NoParams,
        failure_message="Failed to explode. Please try again.",
    )
    releases = count_releases(registry)
    job = registry.job(build_request("explode", {}, [pdf(1)]))

    with pytest.raises(ConversionError) as exc:
        job.run()
    assert type(exc.value) is ConversionError
    assert exc.value.message == "Failed to explode. Please try again."
    assert "boom" in exc.value.detail
    assert job.stage == JobStage.FAILED
    assert len(releases) == 1
    assert leftovers(settings) == []


def test_empty_output_is_invalid(registry):
    registry.operations["nothing"] = OperationSpec(
        name="nothing", handler=lambda ctx: ConversionResult(outputs=[]), params_model=NoParams,
    )
    with pytest.raises(InvalidInput):
        registry.run(build_request("nothing", {}, [pdf(1)]))


def test_multiple_outputs_are_zipped_with_item_count(registry):
    def two(ctx):
        return ConversionResult(
            outputs=[Output("a.txt", b"a", "text/plain"), Output("b.txt", b"b", "text/plain")],
            archive_name="pair.zip",
            item_count=2,
        )

    registry.operations["two"] = OperationSpec(name="two", handler=two, params_model=NoParams, min_files=0)
    job = registry.job(build_request("two", {}))
    result = job.run()

    assert job.stage == JobStage.COMPLETED
    assert result.filename == "pair.zip"
    assert result.headers["X-Item-Count"] == "2"
    with zipfile.ZipFile(io.BytesIO(result.body)) as z:
        assert z.read("b.txt") == b"b"


def test_upload_only_for_opted_in_operations(registry, store):
    result = registry.run(build_request("remove-pages", {"pagesToRemove": "1"}, [pdf(2)]))
    assert result.upload is None
    assert store.objects == {}


def test_disabled_store_reports_skip(settings):
    registry = JobRegistry(settings, blob_store=DisabledBlobStore())
    result = registry.run(build_request("extract-pages", {"pagesToExtract": "1"}, [pdf(2)]))
    assert isinstance(result.upload, Skipped)


def test_normalize_fields():
    fields = normalize_fields({
        "size": "20",
        "fontSize": "14",
        "color": "#ff0000",
        "startNumber": "3",
        "margin": "30",
        "marginY": "10",
        "text": "   ",
        "files": "ignored",
    })
    assert fields == {
        "fontSize": "14",
        "fontColor": "#ff0000",
        "startPage": "3",
        "marginX": "30",
        "marginY": "10",
    }


class RecordingCompressor(DocumentBackend):
    name = "recording"

    def __init__(self):
        self.levels = []

    def invoke(self, ws, source, level="recommended", **options):
        self.levels.append(level)
        return source


@pytest.mark.parametrize("value, expected", [
    ("screen", "recommended"),
    ("", "recommended"),
    ("nonsense", "recommended"),
    ("basic", "basic"),
    ("STRONG", "strong"),
    ("extreme", "extreme"),
])
def test_compression_level_mapping(settings, value, expected):
    recorder = RecordingCompressor()
    registry = JobRegistry(settings, backends={"compress": BackendChain("compress", [recorder])})
    fields = {"compressionLevel": value} if value else {}
    registry.run(build_request("compress", fields, [pdf(1)]))
    assert recorder.levels == [expected]
