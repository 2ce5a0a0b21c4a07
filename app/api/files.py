"""File upload, sharing and download endpoints."""

import base64

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db
from app.config import settings
from app.models.user import User
from app.rate_limit import limiter
from app.schemas.common import ListResponse, MessageResponse
from app.schemas.files import (
    BatchUploadResponse,
    ChunkUploadResponse,
    DownloadStats,
    FileDetail,
    FileRead,
    RecipientLink,
    ResendRequest,
    ResendResponse,
    UploadResponse,
)
from app.services.downloads import DownloadPayload, downloads
from app.services.file_catalog import file_catalog
from app.services.file_metadata import resolve_mime_type
from app.services.response import list_response
from app.services.uploads import IncomingFile, UploadOptions, UploadResult, file_uploads

router = APIRouter(prefix="/files", tags=["files"])

TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def _split_recipients(values: list[str]) -> list[str]:
    addresses = []
    for value in values:
        addresses.extend(part.strip() for part in value.split(",") if part.strip())
    return addresses


def _incoming(upload: UploadFile) -> IncomingFile:
    return IncomingFile(
        filename=upload.filename or "",
        content_type=upload.content_type,
        stream=upload.file,
        size=upload.size,
    )


def _upload_response(result: UploadResult) -> UploadResponse:
    file = result.file
    return UploadResponse(
        id=file.id,
        original_filename=file.original_filename,
        file_size=file.file_size,
        formatted_size=file.formatted_size,
        checksum=file.checksum,
        expiry_date=file.expiry_date,
        max_downloads=file.max_downloads,
        recipients=[
            RecipientLink(
                id=r.id,
                email=r.email,
                download_url=r.download_url(),
                email_status=r.email_status,
            )
            for r in result.recipients
        ],
        notification_failures=result.notification_failures,
    )


def _streaming(payload: DownloadPayload) -> StreamingResponse:
    return StreamingResponse(
        payload.stream.chunks,
        status_code=payload.status_code,
        media_type=payload.mime_type or "application/octet-stream",
        headers=payload.headers(),
    )


@router.get("", response_model=ListResponse[FileRead])
def list_files(
    search: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="upload_date"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    items, total = file_catalog.list_files(
        db,
        owner_id=current_user.id,
        search=search,
        status=status,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )
    return list_response(items, limit, offset, total)


@router.post("/upload", response_model=UploadResponse, status_code=201)
@limiter.limit(settings.upload_rate_limit)
def upload_file(
    request: Request,
    file: UploadFile = File(...),
    recipients: list[str] = Form(...),
    description: str | None = Form(default=None, max_length=1000),
    retention_days: int | None = Form(default=None),
    max_downloads: int | None = Form(default=None),
    custom_message: str | None = Form(default=None, max_length=2000),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    options = UploadOptions(
        recipients=_split_recipients(recipients),
        description=description,
        retention_days=retention_days,
        max_downloads=max_downloads,
        custom_message=custom_message,
    )
    results = file_uploads.upload(db, current_user, [_incoming(file)], options, request)
    return _upload_response(results[0])


@router.post("/upload-multiple", response_model=BatchUploadResponse, status_code=201)
@limiter.limit(settings.upload_rate_limit)
def upload_multiple(
    request: Request,
    files: list[UploadFile] = File(...),
    recipients: list[str] = Form(...),
    description: str | None = Form(default=None, max_length=1000),
    retention_days: int | None = Form(default=None),
    max_downloads: int | None = Form(default=None),
    custom_message: str | None = Form(default=None, max_length=2000),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    options = UploadOptions(
        recipients=_split_recipients(recipients),
        description=description,
        retention_days=retention_days,
        max_downloads=max_downloads,
        custom_message=custom_message,
    )
    results = file_uploads.upload(
        db, current_user, [_incoming(item) for item in files], options, request
    )
    return BatchUploadResponse(
        files=[_upload_response(result) for result in results],
        total_size=sum(result.file.file_size for result in results),
    )


@router.post("/upload-chunk", response_model=ChunkUploadResponse)
@limiter.limit(settings.upload_chunk_rate_limit)
def upload_chunk(
    request: Request,
    chunk: UploadFile = File(...),
    chunk_number: int = Form(...),
    total_chunks: int = Form(...),
    filename: str = Form(..., max_length=255),
    file_id: str | None = Form(default=None),
    content_type: str | None = Form(default=None),
    total_size: int | None = Form(default=None, ge=0),
    recipients: list[str] = Form(default=[]),
    description: str | None = Form(default=None, max_length=1000),
    retention_days: int | None = Form(default=None),
    max_downloads: int | None = Form(default=None),
    custom_message: str | None = Form(default=None, max_length=2000),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    incoming = IncomingFile(
        filename=filename,
        content_type=content_type or resolve_mime_type(filename, None),
        stream=chunk.file,
        size=chunk.size,
    )
    options = UploadOptions(
        recipients=_split_recipients(recipients),
        description=description,
        retention_days=retention_days,
        max_downloads=max_downloads,
        custom_message=custom_message,
    )
    result = file_uploads.receive_chunk(
        db,
        current_user,
        incoming,
        chunk_number,
        total_chunks,
        options=options,
        file_id=file_id,
        total_size=total_size,
        request=request,
    )
    return ChunkUploadResponse(
        file_id=result.file.id,
        chunk_number=result.chunk_number,
        total_chunks=result.total_chunks,
        status=result.file.status,
        upload_progress=result.file.upload_progress,
        completed=result.completed,
        upload=_upload_response(result.upload) if result.upload else None,
    )


@router.get("/download/{token}")
@limiter.limit(settings.download_rate_limit)
def redeem_download(request: Request, token: str, db: Session = Depends(get_db)):
    return _streaming(downloads.redeem(db, token, request))


@router.get("/track-email/{token}")
def track_email(token: str, db: Session = Depends(get_db)):
    downloads.track_email_open(db, token)
    return Response(
        content=TRACKING_PIXEL,
        media_type="image/gif",
        headers={"Cache-Control": "no-store, no-cache, must-revalidate", "Pragma": "no-cache"},
    )


@router.get("/{file_id}", response_model=FileDetail)
def get_file(
    file_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    file = file_catalog.get_owned(db, file_id, current_user)
    detail = FileDetail.model_validate(file)
    detail.stats = DownloadStats(**file_catalog.download_stats(file))
    return detail


@router.get("/{file_id}/download")
def download_file(
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    payload = downloads.open_for_owner(
        db, file_id, current_user, request.headers.get("range"), request
    )
    return _streaming(payload)


@router.delete("/{file_id}", response_model=MessageResponse)
def delete_file(
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    file = file_catalog.get_owned(db, file_id, current_user)
    file_catalog.delete(db, file, current_user, request)
    return MessageResponse(message="File deleted")


@router.post("/{file_id}/resend-emails", response_model=ResendResponse)
def resend_emails(
    file_id: str,
    payload: ResendRequest | None = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    file = file_catalog.get_owned(db, file_id, current_user)
    emails = [str(e) for e in payload.emails] if payload and payload.emails else None
    resent = file_uploads.resend_notifications(db, file, emails)
    return ResendResponse(
        message=f"Notifications queued for {len(resent)} recipient(s)",
        recipients=[r.email for r in resent],
    )
