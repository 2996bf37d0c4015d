"""Snowball upload, event status and growth analytics endpoints."""

import logging
from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status

from snowball.core.config import settings
from snowball.core.deps import Uploader, get_membership_service, get_snowball_service
from snowball.core.exceptions import (
    CSVValidationError,
    EventNotFoundError,
    InvalidOptInTokenError,
    MemberNotFoundError,
    NotRepositoryOwnerError,
    RepositoryNotFoundError,
    UploadDeniedError,
)
from snowball.core.rate_limit import limiter
from snowball.schemas.common import PaginatedResponse
from snowball.schemas.snowball import (
    EventResultsResponse,
    EventStatusResponse,
    EventSummary,
    GrowthReportResponse,
    MemberRemovalResponse,
    MemberStatusResponse,
    OptInConfirmation,
    UploadAcceptedResponse,
)
from snowball.services.membership_service import MembershipService
from snowball.services.snowball_service import SnowballService

logger = logging.getLogger(__name__)

router = APIRouter()

SnowballServiceDep = Annotated[SnowballService, Depends(get_snowball_service)]
MembershipServiceDep = Annotated[MembershipService, Depends(get_membership_service)]

# Eligibility denials are permanent for the request; quota denials are retryable
FORBIDDEN_REASONS = {"insufficient_karma", "account_too_new", "max_generation_depth"}
BAD_REQUEST_REASONS = {"too_many_rows", "invalid_parent_event"}


def _upload_denied(exc: UploadDeniedError) -> HTTPException:
    if exc.reason in FORBIDDEN_REASONS:
        code = status.HTTP_403_FORBIDDEN
    elif exc.reason in BAD_REQUEST_REASONS:
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_429_TOO_MANY_REQUESTS
    return HTTPException(status_code=code, detail={"reason": exc.reason, "message": str(exc)})


@router.post(
    "/repositories/{repository_id}/uploads",
    response_model=UploadAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a CSV of emails to a repository",
)
@limiter.limit("30/minute")
async def upload_csv(
    request: Request,  # noqa: ARG001 (slowapi reads it)
    repository_id: UUID,
    uploader: Uploader,
    service: SnowballServiceDep,
    file: UploadFile = File(..., description="CSV file with an email column"),
    parent_event_id: UUID | None = Form(default=None),
    priority: int | None = Form(default=None, ge=0, le=9),
) -> UploadAcceptedResponse:
    """Validate the CSV and queue it for distribution. Poll the event for progress."""
    max_size = settings.snowball_max_file_size_bytes

    # Early size check before reading the full file into memory
    if file.size is not None and file.size > max_size:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": "file_too_large", "message": "File exceeds the upload size limit"},
        )

    contents = await file.read()
    try:
        return await service.submit_upload(
            repository_id,
            uploader,
            file.filename or "upload.csv",
            contents,
            parent_event_id=parent_event_id,
            priority=priority,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except CSVValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": exc.code, "message": str(exc)},
        ) from exc
    except UploadDeniedError as exc:
        raise _upload_denied(exc) from exc


@router.get("/events/{event_id}", response_model=EventStatusResponse)
async def get_event_status(event_id: UUID, service: SnowballServiceDep) -> EventStatusResponse:
    """Current status and counters of an upload."""
    try:
        return await service.event_status(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/events/{event_id}/results", response_model=EventResultsResponse)
async def get_event_results(event_id: UUID, service: SnowballServiceDep) -> EventResultsResponse:
    """Per-row outcome of an upload."""
    try:
        return await service.event_results(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get(
    "/repositories/{repository_id}/events",
    response_model=PaginatedResponse[EventSummary],
)
async def list_repository_events(
    repository_id: UUID,
    service: SnowballServiceDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> PaginatedResponse[EventSummary]:
    try:
        return await service.list_events(repository_id, page, page_size)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/repositories/{repository_id}/growth", response_model=GrowthReportResponse)
async def get_growth_report(
    repository_id: UUID,
    service: SnowballServiceDep,
    days: int = Query(30, ge=1, le=365),
) -> GrowthReportResponse:
    """Viral growth analytics for a repository."""
    try:
        return await service.growth_report(repository_id, days)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.delete(
    "/repositories/{repository_id}/members/{address}",
    response_model=MemberRemovalResponse,
)
async def remove_member(
    repository_id: UUID,
    address: str,
    service: MembershipServiceDep,
) -> MemberRemovalResponse:
    """Unsubscribe an address. Later uploads will not re-add it."""
    try:
        return await service.remove_member(repository_id, address)
    except (RepositoryNotFoundError, MemberNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/repositories/{repository_id}/members/{address}/opt-in",
    response_model=MemberStatusResponse,
)
@limiter.limit("10/minute")
async def confirm_opt_in(
    request: Request,  # noqa: ARG001 (slowapi reads it)
    repository_id: UUID,
    address: str,
    data: OptInConfirmation,
    service: MembershipServiceDep,
) -> MemberStatusResponse:
    """Confirm membership with the token from the invitation email."""
    try:
        return await service.confirm_opt_in(repository_id, address, data.token)
    except (RepositoryNotFoundError, MemberNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidOptInTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"reason": exc.reason, "message": str(exc)},
        ) from exc


@router.post(
    "/repositories/{repository_id}/members/{address}/{decision}",
    response_model=MemberStatusResponse,
)
async def review_member(
    repository_id: UUID,
    address: str,
    decision: Literal["approve", "reject"],
    reviewer: Uploader,
    service: MembershipServiceDep,
) -> MemberStatusResponse:
    """Approve or reject a member awaiting review. Owner only."""
    review = service.approve_member if decision == "approve" else service.reject_member
    try:
        return await review(repository_id, address, reviewer.user_id)
    except (RepositoryNotFoundError, MemberNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except NotRepositoryOwnerError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
