"""
Routes/endpoints for the Files API
"""

import uuid
from typing import Any

from fastapi import APIRouter, Body, File, Form, Query, Response, UploadFile, status
from fastapi.responses import RedirectResponse

from api.files.models import BatchUploadResult, DeletedFile, FileRecordPublic, FileStats
from api.files.services import UploadRequest
from core.deps import FileServicesDep
from core.exceptions import NotFound
from core.models import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/files", tags=["File Endpoints"])


def _parse_id(file_id: str) -> uuid.UUID:
    """Ids that are not UUIDs cannot name a file"""
    try:
        return uuid.UUID(file_id)
    except ValueError:
        raise NotFound(f"File {file_id} not found") from None


def _parse_tags(tags: str | None) -> list[str]:
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


def _declared_size(upload: UploadFile) -> int | None:
    if upload.size is not None:
        return upload.size
    # Measure the spooled file without reading it into memory
    stream = upload.file
    position = stream.tell()
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(position)
    return size


def _upload_request(
    upload: UploadFile,
    *,
    uploaded_by: str | None,
    tags: str | None,
    is_public: bool,
    title: str | None,
    description: str | None,
) -> UploadRequest:
    metadata: dict[str, Any] = {}
    if title:
        metadata["title"] = title
    if description:
        metadata["description"] = description
    return UploadRequest(
        content=upload.file,
        declared_name=upload.filename,
        declared_mime_type=upload.content_type,
        declared_size=_declared_size(upload),
        uploaded_by=uploaded_by,
        tags=_parse_tags(tags),
        is_public=is_public,
        metadata=metadata,
    )


###############################################################################
# Upload Endpoints /api/v1/files
###############################################################################


@router.post(
    "",
    response_model=ApiResponse[FileRecordPublic],
    status_code=status.HTTP_201_CREATED,
)
def upload_file(
    services: FileServicesDep,
    file: UploadFile = File(..., description="File to upload"),
    uploaded_by: str | None = Form(None, alias="uploadedBy"),
    tags: str | None = Form(None, description="Comma-separated tags"),
    is_public: bool = Form(False, alias="isPublic"),
    title: str | None = Form(None),
    description: str | None = Form(None),
) -> ApiResponse[FileRecordPublic]:
    """
    Upload one file and record its metadata.
    """
    record = services.uploads.upload(
        _upload_request(
            file,
            uploaded_by=uploaded_by,
            tags=tags,
            is_public=is_public,
            title=title,
            description=description,
        )
    )
    return ApiResponse(message="File uploaded successfully", data=record)


@router.post(
    "/batch",
    response_model=ApiResponse[BatchUploadResult],
    status_code=status.HTTP_200_OK,
    responses={207: {"description": "Some files failed"}},
)
def upload_files(
    services: FileServicesDep,
    response: Response,
    files: list[UploadFile] = File(..., alias="files[]", description="Files to upload"),
    uploaded_by: str | None = Form(None, alias="uploadedBy"),
    tags: str | None = Form(None, description="Comma-separated tags"),
    is_public: bool = Form(False, alias="isPublic"),
) -> ApiResponse[BatchUploadResult]:
    """
    Upload several files; each one succeeds or fails on its own.
    Returns 200 when every file was stored, 207 otherwise.
    """
    result = services.uploads.upload_many(
        [
            _upload_request(
                upload,
                uploaded_by=uploaded_by,
                tags=tags,
                is_public=is_public,
                title=None,
                description=None,
            )
            for upload in files
        ]
    )
    if result.failed:
        response.status_code = status.HTTP_207_MULTI_STATUS
        message = f"{result.succeeded} of {result.total} files uploaded"
    else:
        message = f"{result.total} files uploaded successfully"
    return ApiResponse(message=message, data=result)


###############################################################################
# Query Endpoints /api/v1/files
###############################################################################


@router.get(
    "",
    response_model=PaginatedResponse[list[FileRecordPublic]],
    status_code=status.HTTP_200_OK,
)
def list_files(
    services: FileServicesDep,
    page: int = Query(1, description="Page number (1-indexed)"),
    limit: int | None = Query(None, description="Number of items per page"),
    uploaded_by: str | None = Query(None, alias="uploadedBy"),
    is_public: bool | None = Query(None, alias="isPublic"),
    search: str | None = Query(None, description="Matches names, tags, title and description"),
    mime_type: str | None = Query(None, alias="mimeType"),
    sort_by: str | None = Query("createdAt", alias="sortBy", description="Field to sort by"),
    sort_order: str | None = Query("desc", alias="sortOrder", description="asc or desc"),
) -> PaginatedResponse[list[FileRecordPublic]]:
    """
    Returns a filtered, paginated list of files.
    """
    records, page_info = services.queries.list(
        search=search,
        uploaded_by=uploaded_by,
        is_public=is_public,
        mime_type=mime_type,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return PaginatedResponse(
        message="Files retrieved successfully",
        data=records,
        pagination=page_info,
    )


@router.get("/stats", response_model=ApiResponse[FileStats])
def get_stats(services: FileServicesDep) -> ApiResponse[FileStats]:
    """
    Aggregate figures over every stored file.
    """
    return ApiResponse(message="File statistics retrieved", data=services.queries.stats())


###############################################################################
# File Endpoints /api/v1/files/{file_id}
###############################################################################


@router.get("/{file_id}", response_model=ApiResponse[FileRecordPublic])
def get_file(services: FileServicesDep, file_id: str) -> ApiResponse[FileRecordPublic]:
    """
    Returns a single file record.
    """
    record = services.queries.get_by_id(_parse_id(file_id))
    return ApiResponse(message="File retrieved successfully", data=record)


@router.get(
    "/{file_id}/download",
    status_code=status.HTTP_307_TEMPORARY_REDIRECT,
    response_class=RedirectResponse,
)
def download_file(services: FileServicesDep, file_id: str) -> RedirectResponse:
    """
    Redirect to the file: its public URL, or a short-lived signed URL for
    private files.
    """
    url = services.queries.download_url(_parse_id(file_id))
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.put("/{file_id}", response_model=ApiResponse[FileRecordPublic])
def update_file(
    services: FileServicesDep,
    file_id: str,
    fields: dict[str, Any] = Body(..., description="Subset of tags, isPublic, metadata"),
) -> ApiResponse[FileRecordPublic]:
    """
    Update the mutable fields of a file.
    """
    record = services.lifecycle.update_metadata(_parse_id(file_id), fields)
    return ApiResponse(message="File updated successfully", data=record)


@router.delete("/{file_id}", response_model=ApiResponse[DeletedFile])
def delete_file(services: FileServicesDep, file_id: str) -> ApiResponse[DeletedFile]:
    """
    Delete the stored object and its metadata record.
    """
    deleted = services.lifecycle.delete(_parse_id(file_id))
    return ApiResponse(message="File deleted successfully", data=deleted)
