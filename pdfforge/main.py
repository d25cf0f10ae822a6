# pdfforge/main.py
import hmac
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from . import pdf_ops
from .blobstore import RETENTION_SECONDS, BlobStore, Skipped, Uploaded, build_blob_store, stamped_key
from .config import Settings, configure_logging, get_settings
from .errors import ConversionError, InvalidInput, PayloadTooLarge
from .jobs import ConversionResult, InputFile
from .qr import qr_data_url
from .registry import FILE_FIELDS, JobRegistry, build_request

logger = logging.getLogger(__name__)

SHARED_PREFIX = "shared"


# ----------------------------
# Upload limit helpers
# ----------------------------
async def read_upload_limited(file: UploadFile, max_bytes: int, message: str) -> bytes:
    """
    Reads an upload in 1MB chunks and enforces max size while reading.
    """
    chunks = []
    total = 0
    try:
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            total += len(chunk)
            if total > max_bytes:
                raise PayloadTooLarge(message)
            chunks.append(chunk)
    finally:
        await file.close()
    return b"".join(chunks)


async def read_request(request: Request, settings: Settings) -> Tuple[Dict[str, Any], List[InputFile]]:
    """Form fields and uploaded files from multipart/urlencoded or JSON bodies."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise InvalidInput("Invalid JSON body.")
        if not isinstance(body, dict):
            raise InvalidInput("Invalid JSON body.")
        return body, []

    form = await request.form()
    fields: Dict[str, Any] = {}
    files: List[InputFile] = []
    total = 0
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if key not in FILE_FIELDS or not value.filename:
                continue
            remaining = settings.max_upload_bytes - total
            if remaining <= 0:
                raise PayloadTooLarge(f"Total upload too large. Max allowed is {settings.max_upload_mb}MB.")
            msg = (
                f"Total upload too large. Max allowed is {settings.max_upload_mb}MB."
                if files else f"File too large. Max allowed is {settings.max_upload_mb}MB."
            )
            data = await read_upload_limited(value, remaining, msg)
            total += len(data)
            files.append(InputFile(name=value.filename, content_type=value.content_type or "", data=data))
        else:
            fields.setdefault(key, value)
    return fields, files


def _safe_filename(name: str) -> str:
    keep = "".join(c for c in name if c.isalnum() or c in ("-", "_", " ", ".")).strip()
    return keep or "output"


def content_disposition(name: str) -> str:
    ascii_name = _safe_filename(name.encode("ascii", "ignore").decode("ascii"))
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(name)}"


def _header_text(value: str) -> str:
    return value.encode("ascii", "replace").decode("ascii").replace("\n", " ")


def job_response(result: ConversionResult) -> Response:
    headers = {k: _header_text(v) for k, v in result.headers.items()}
    headers["Content-Disposition"] = content_disposition(result.filename)

    upload = result.upload
    if isinstance(upload, Uploaded):
        headers["X-Supabase-Url"] = upload.url
        headers["X-File-Size"] = str(upload.size_bytes)
    elif isinstance(upload, Skipped):
        headers["X-Upload-Warning"] = _header_text(upload.reason)

    return Response(content=result.body, media_type=result.media_type, headers=headers)


async def first_file(request: Request, settings: Settings) -> Tuple[Dict[str, Any], InputFile]:
    fields, files = await read_request(request, settings)
    if not files:
        raise InvalidInput("Please upload a PDF file.")
    return fields, files[0]


def _is_pdf(f: InputFile) -> bool:
    return f.extension == ".pdf" or (f.content_type or "").startswith("application/pdf")


def create_app(
    settings: Optional[Settings] = None,
    blob_store: Optional[BlobStore] = None,
    backends: Optional[dict] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    store = blob_store if blob_store is not None else build_blob_store(settings)
    registry = JobRegistry(settings, blob_store=store, backends=backends)
    download_signer = URLSafeTimedSerializer(settings.secret_key, salt="pdfforge-download")

    app = FastAPI(title="PDF Tools")
    app.state.settings = settings
    app.state.registry = registry
    app.state.blob_store = store

    @app.exception_handler(ConversionError)
    async def conversion_error_handler(request: Request, exc: ConversionError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    # ----------------------------
    # Health
    # ----------------------------
    @app.get("/health")
    def health():
        return {"ok": True, "max_upload_mb": settings.max_upload_mb, "blob_store": store.name}

    # ----------------------------
    # Inspection
    # ----------------------------
    @app.post("/api/pdf-info")
    async def pdf_info(request: Request):
        _, f = await first_file(request, settings)
        if not _is_pdf(f):
            raise InvalidInput("File must be a valid PDF document.")
        return await run_in_threadpool(pdf_ops.pdf_info, f.name, f.data)

    @app.post("/api/pdf-thumbnail")
    async def pdf_thumbnail(request: Request):
        fields, f = await first_file(request, settings)
        try:
            page_number = int(fields.get("pageNumber") or 1)
            width = int(fields.get("width") or 200)
        except ValueError:
            raise InvalidInput("pageNumber and width must be integers.")
        png = await run_in_threadpool(pdf_ops.thumbnail, f.data, page_number, width)
        return Response(content=png, media_type="image/png", headers={"Cache-Control": "public, max-age=3600"})

    # ----------------------------
    # QR share
    # ----------------------------
    @app.post("/api/upload-pdf")
    async def upload_pdf(request: Request):
        _, files = await read_request(request, settings)
        if not files:
            raise InvalidInput("No file provided")
        f = files[0]
        if not _is_pdf(f):
            raise InvalidInput("Only PDF files are allowed")

        key = stamped_key(SHARED_PREFIX, f.name)
        try:
            await run_in_threadpool(store.put, key, f.data, "application/pdf")
            signed = await run_in_threadpool(store.signed_url, key, RETENTION_SECONDS)
        except Exception as e:
            logger.warning("upload-pdf: storing %s failed: %s", key, e)
            return JSONResponse(status_code=500, content={"error": f"Failed to upload file: {e}"})

        base = settings.public_base_url or str(request.base_url).rstrip("/")
        token = download_signer.dumps({"key": key})
        download_url = f"{base}/api/download-pdf?token={token}"
        expires_at = datetime.fromtimestamp(time.time() + RETENTION_SECONDS, tz=timezone.utc)

        return {
            "success": True,
            "data": {
                "fileName": Path(key).name.split("_", 1)[1],
                "filePath": key,
                "downloadUrl": download_url,
                "signedUrl": signed,
                "qrCode": qr_data_url(download_url),
                "expiresAt": expires_at.isoformat(),
                "expiresInSeconds": RETENTION_SECONDS,
            },
        }

    @app.get("/api/download-pdf")
    async def download_pdf(token: str = ""):
        if not token:
            return JSONResponse(status_code=400, content={"error": "Download token is required"})
        try:
            data = download_signer.loads(token, max_age=RETENTION_SECONDS)
        except (BadSignature, SignatureExpired):
            return JSONResponse(status_code=400, content={"error": "Download link is invalid or expired"})

        try:
            url = await run_in_threadpool(store.signed_url, data["key"], RETENTION_SECONDS)
        except KeyError:
            return JSONResponse(status_code=404, content={"error": "File not found"})
        return RedirectResponse(url, status_code=302)

    # ----------------------------
    # Maintenance
    # ----------------------------
    @app.api_route("/api/cleanup-files", methods=["GET", "POST"])
    async def cleanup_files(request: Request):
        expected = f"Bearer {settings.cron_secret}"
        given = request.headers.get("authorization", "")
        if not settings.cron_secret or not hmac.compare_digest(given.encode(), expected.encode()):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        try:
            summary = await run_in_threadpool(store.purge_expired)
        except Exception as e:
            logger.exception("cleanup: listing files failed")
            return JSONResponse(status_code=500, content={"error": f"Failed to list files: {e}"})
        return summary.as_dict()

    # ----------------------------
    # Jobs
    # ----------------------------
    @app.post("/api/{operation}")
    async def run_operation(operation: str, request: Request):
        if registry.get(operation) is None:
            return JSONResponse(status_code=404, content={"error": f"Unknown operation: {operation}"})

        fields, files = await read_request(request, settings)
        job_request = build_request(operation, fields, files)
        result = await run_in_threadpool(registry.run, job_request)
        return job_response(result)

    return app


app = create_app()
