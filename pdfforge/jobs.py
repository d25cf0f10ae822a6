# pdfforge/jobs.py
import io
import logging
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Type

from pydantic import BaseModel, ValidationError

from .blobstore import BlobStore, Skipped, UploadOutcome
from .config import Settings
from .errors import BackendUnavailable, ConversionError, InvalidInput
from .workspace import TempWorkspace, WorkspaceHandle

logger = logging.getLogger(__name__)


class JobStage(str, Enum):
    VALIDATING = "validating"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class InputFile:
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return Path(self.name or "").suffix.lower()

    @property
    def stem(self) -> str:
        return Path(self.name or "document").stem or "document"


@dataclass
class ConversionRequest:
    operation: str
    inputs: List[InputFile] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Output:
    name: str
    data: bytes
    media_type: str = "application/pdf"


@dataclass
class ConversionResult:
    outputs: List[Output]
    headers: Dict[str, str] = field(default_factory=dict)
    archive_name: Optional[str] = None
    item_count: Optional[int] = None
    upload: Optional[UploadOutcome] = None

    # set while packaging
    filename: str = ""
    body: bytes = b""
    media_type: str = "application/octet-stream"


@dataclass
class JobContext:
    """What a handler gets to work with."""

    request: ConversionRequest
    params: BaseModel
    workspace: WorkspaceHandle
    backends: Dict[str, Any]
    settings: Settings

    @property
    def inputs(self) -> List[InputFile]:
        return self.request.inputs

    @property
    def first(self) -> InputFile:
        return self.request.inputs[0]


@dataclass
class OperationSpec:
    name: str
    handler: Callable[[JobContext], ConversionResult]
    params_model: Type[BaseModel]
    extensions: FrozenSet[str] = frozenset()
    mime_types: FrozenSet[str] = frozenset()
    min_files: int = 1
    max_files: Optional[int] = 1
    upload: bool = False
    always_archive: bool = False
    archive_name: str = "files.zip"
    missing_message: str = "Please upload a file."
    type_message: str = "Unsupported file type."
    failure_message: str = "Failed to process the file. Please try again."


def zip_outputs(outputs: List[Output]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as z:
        for out in outputs:
            z.writestr(out.name, out.data)
    return buf.getvalue()


def _validation_message(err: ValidationError) -> str:
    first = err.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "__root__")
    msg = first.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"Invalid parameter {loc}: {msg}" if loc else msg


class ConversionJob:
    """
    One request end to end:

        VALIDATING -> PROCESSING -> (UPLOADING) -> COMPLETED
                  \\-> FAILED     \\-> FAILED

    Validation happens before any workspace exists. Once acquired, the
    workspace is released exactly once whatever the outcome.
    """

    def __init__(
        self,
        spec: OperationSpec,
        request: ConversionRequest,
        workspace: TempWorkspace,
        backends: Dict[str, Any],
        settings: Settings,
        blob_store: Optional[BlobStore] = None,
    ):
        self.spec = spec
        self.request = request
        self.workspace = workspace
        self.backends = backends
        self.settings = settings
        self.blob_store = blob_store
        self.stage = JobStage.VALIDATING

    def validate(self) -> BaseModel:
        spec = self.spec
        inputs = self.request.inputs

        if len(inputs) < spec.min_files:
            raise InvalidInput(spec.missing_message)
        if spec.max_files is not None and len(inputs) > spec.max_files:
            raise InvalidInput(f"Too many files. At most {spec.max_files} allowed.")

        if spec.extensions or spec.mime_types:
            for f in inputs:
                if f.extension in spec.extensions:
                    continue
                if (f.content_type or "").split(";")[0].strip().lower() in spec.mime_types:
                    continue
                raise InvalidInput(spec.type_message)

        try:
            return spec.params_model.model_validate(self.request.params)
        except ValidationError as e:
            raise InvalidInput(_validation_message(e))

    def _package(self, result: ConversionResult) -> None:
        if not result.outputs:
            raise InvalidInput("Nothing was produced from the uploaded file(s).")
        if result.item_count is None:
            result.item_count = len(result.outputs)
        result.headers.setdefault("X-Item-Count", str(result.item_count))

        if len(result.outputs) == 1 and not self.spec.always_archive:
            out = result.outputs[0]
            result.filename, result.body, result.media_type = out.name, out.data, out.media_type
            return

        result.filename = result.archive_name or self.spec.archive_name
        result.body = zip_outputs(result.outputs)
        result.media_type = "application/zip"

    def _upload(self, result: ConversionResult) -> None:
        self.stage = JobStage.UPLOADING
        original = self.request.inputs[0].name if self.request.inputs else None
        try:
            result.upload = self.blob_store.upload_if_eligible(result.body, result.filename, original)
        except Exception as e:
            logger.warning("%s: upload raised: %s", self.spec.name, e)
            result.upload = Skipped(f"Upload failed: {e}")

    def run(self) -> ConversionResult:
        started = time.time()
        self.stage = JobStage.VALIDATING
        try:
            params = self.validate()

            self.stage = JobStage.PROCESSING
            with self.workspace.scoped() as ws:
                ctx = JobContext(
                    request=self.request,
                    params=params,
                    workspace=ws,
                    backends=self.backends,
                    settings=self.settings,
                )
                result = self.spec.handler(ctx)
                self._package(result)

            if self.spec.upload and self.blob_store is not None:
                self._upload(result)
        except (InvalidInput, BackendUnavailable) as e:
            self.stage = JobStage.FAILED
            logger.info("%s failed (%s): %s", self.spec.name, type(e).__name__, e.detail or e.message)
            raise
        except Exception as e:
            self.stage = JobStage.FAILED
            logger.exception("%s failed unexpectedly", self.spec.name)
            raise ConversionError(self.spec.failure_message, detail=getattr(e, "detail", None) or repr(e)) from e

        self.stage = JobStage.COMPLETED
        logger.info(
            "%s completed: %s (%d bytes, %s item(s)) in %.2fs",
            self.spec.name, result.filename, len(result.body), result.item_count, time.time() - started,
        )
        return result
