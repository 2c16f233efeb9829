"""HTTP routes for threads and their messages."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, Response

from threadline import __version__
from threadline.api.schemas import (
    CreateThreadRequest,
    CreateThreadResponse,
    MessageResponse,
    SendMessageRequest,
    SuccessResponse,
    ThreadResponse,
)
from threadline.ratelimit.limiter import Decision
from threadline.service import SessionService


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }


# ── Dependencies ────────────────────────────────────────────────────────────────


def get_service(request: Request) -> SessionService:
    return request.app.state.service


def get_credential(
    request: Request,
    api_key: Annotated[str | None, Header(alias="api-key")] = None,
) -> str:
    """Resolve the caller's credential and remember it for error responses."""
    credential_id = request.app.state.validator.validate(api_key)
    request.state.credential_id = credential_id
    return credential_id


Service = Annotated[SessionService, Depends(get_service)]
Credential = Annotated[str, Depends(get_credential)]


def _stamp(response: Response, service: SessionService, credential_id: str) -> None:
    response.headers.update(rate_limit_headers(service.rate_limit_status(credential_id)))


# ── Threads ─────────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/thread", tags=["threads"])


@router.post("", status_code=201, response_model=CreateThreadResponse)
async def create_thread(
    response: Response,
    credential_id: Credential,
    service: Service,
    body: CreateThreadRequest | None = None,
) -> CreateThreadResponse:
    """Create a thread, optionally with its first user message."""
    session = await service.create_session(
        credential_id, body.message if body is not None else None
    )
    _stamp(response, service, credential_id)
    return CreateThreadResponse(id=session.id, created_at=session.created_at)


@router.post("/{thread_id}/messages", response_model=SuccessResponse)
async def send_message(
    thread_id: str,
    body: SendMessageRequest,
    response: Response,
    credential_id: Credential,
    service: Service,
) -> SuccessResponse:
    """Append a user message. The agent's reply arrives asynchronously."""
    await service.send_message(credential_id, thread_id, body.message)
    _stamp(response, service, credential_id)
    return SuccessResponse()


@router.get("/{thread_id}", response_model=ThreadResponse, response_model_exclude_none=True)
async def get_thread(
    thread_id: str,
    response: Response,
    credential_id: Credential,
    service: Service,
) -> ThreadResponse:
    session = await service.get_session(credential_id, thread_id)
    _stamp(response, service, credential_id)
    return ThreadResponse.from_session(session)


@router.get(
    "/{thread_id}/messages",
    response_model=list[MessageResponse],
    response_model_exclude_none=True,
)
async def list_messages(
    thread_id: str,
    response: Response,
    credential_id: Credential,
    service: Service,
    limit: int | None = None,
    order: str = "asc",
    after: int | None = None,
    before: int | None = None,
) -> list[MessageResponse]:
    """
    One page of messages.

    Page forward with ``after=<last id>``, backward with ``before=<first id>``;
    ``after`` wins when both are given.
    """
    messages = await service.list_messages(
        credential_id, thread_id, limit=limit, order=order, after=after, before=before
    )
    _stamp(response, service, credential_id)
    return [MessageResponse.from_message(m) for m in messages]


# ── Health ──────────────────────────────────────────────────────────────────────

health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe. Needs no API key."""
    return {"status": "ok", "version": __version__}
