"""Provider-neutral JSON routes for the messaging pipeline.

Provider webhooks are translated into these shapes by the host application;
the routes only deal with canonical fields.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.orm import Session, sessionmaker

from .. import schemas
from ..conversations.inbound import InboundMessage
from ..errors import NotFoundError, ValidationError
from ..models.session import get_sessionmaker
from ..service import MessagingService

router = APIRouter(prefix="/api", tags=["messaging"])
logger = logging.getLogger(__name__)


def _get_session_factory(request: Request) -> sessionmaker[Session]:
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        try:
            factory = get_sessionmaker()
        except RuntimeError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        request.app.state.session_factory = factory
    return factory


@contextmanager
def _service_context(request: Request) -> Iterator[MessagingService]:
    session = _get_session_factory(request)()
    try:
        yield MessagingService(session)
        session.commit()
    except ValidationError as exc:
        session.rollback()
        raise HTTPException(status_code=400, detail={"code": exc.code, "message": str(exc)}) from exc
    except NotFoundError as exc:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.exception("messaging.request_failed path=%s", request.url.path)
        raise HTTPException(status_code=500, detail="Internal error") from exc
    finally:
        session.close()


def _provider_health(record, state) -> schemas.ProviderHealth:
    return schemas.ProviderHealth(
        provider=record.provider,
        status=state.value,
        last_success_at=record.last_success_at,
        last_failure_at=record.last_failure_at,
        last_failure_detail=record.last_failure_detail,
    )


@router.post("/outbox/tasks", response_model=schemas.EnqueueTaskResponse, status_code=201)
def enqueue_task(payload: schemas.EnqueueTaskRequest, request: Request) -> schemas.EnqueueTaskResponse:
    """Insert an outbox task, or reschedule the pending one named by ``taskId``."""

    with _service_context(request) as service:
        if payload.schedule:
            task_id = service.schedule(payload.type, payload.payload, payload.next_attempt_at)
        else:
            task_id = service.enqueue(payload.type, payload.payload, payload.next_attempt_at)
        return schemas.EnqueueTaskResponse(task_id=task_id)


@router.post("/messages/outbound", response_model=schemas.OutboundMessageResponse)
def queue_outbound(
    payload: schemas.OutboundMessageRequest, request: Request
) -> schemas.OutboundMessageResponse:
    with _service_context(request) as service:
        message_id = service.queue_outbound_message(
            payload.contact_id,
            payload.channel,
            payload.body,
            to_address=payload.to_address,
            subject=payload.subject,
            media_urls=payload.media_urls,
            metadata=payload.metadata,
            dedupe_key=payload.dedupe_key,
            next_attempt_at=payload.next_attempt_at,
        )
        return schemas.OutboundMessageResponse(message_id=message_id)


@router.post("/messages/{message_id}/retry", response_model=schemas.ConversationMessage)
def retry_message(message_id: UUID, request: Request) -> schemas.ConversationMessage:
    with _service_context(request) as service:
        message = service.retry_outbound_message(message_id)
        return schemas.ConversationMessage.model_validate(message)


@router.post("/messages/inbound", response_model=schemas.InboundMessageResponse)
def record_inbound(
    payload: schemas.InboundMessageRequest, request: Request
) -> schemas.InboundMessageResponse:
    with _service_context(request) as service:
        result = service.record_inbound_message(InboundMessage(**payload.model_dump()))
        return schemas.InboundMessageResponse(
            duplicate=result.duplicate,
            message_id=result.message_id,
            thread_id=result.thread_id,
            contact_id=result.contact_id,
            lead_id=result.lead_id,
        )


@router.post("/delivery-status", response_model=schemas.DeliveryStatusResponse)
def ingest_delivery_status(
    payload: schemas.DeliveryStatusRequest, request: Request
) -> schemas.DeliveryStatusResponse:
    """Apply a status callback; stale, unknown and unmatched ones still return 200."""

    with _service_context(request) as service:
        outcome = service.ingest_delivery_status(
            payload.provider,
            payload.provider_message_id,
            payload.status,
            detail=payload.detail,
            occurred_at=payload.occurred_at,
        )
        return schemas.DeliveryStatusResponse(
            applied=outcome.applied,
            reason=outcome.reason,
            status=outcome.status,
            message_id=outcome.message_id,
        )


@router.get("/providers/health", response_model=schemas.ProviderHealthList)
def list_provider_health(request: Request) -> schemas.ProviderHealthList:
    with _service_context(request) as service:
        items = [_provider_health(record, state) for record, state in service.list_provider_health()]
        return schemas.ProviderHealthList(items=items)


@router.get("/providers/{provider}/health", response_model=schemas.ProviderHealth)
def get_provider_health(provider: str, request: Request) -> schemas.ProviderHealth:
    with _service_context(request) as service:
        record = service.health.get(provider)
        state = service.get_provider_health(provider)
        if record is None:
            return schemas.ProviderHealth(provider=provider, status=state.value)
        return _provider_health(record, state)


@router.get("/threads/{thread_id}/messages", response_model=schemas.ConversationMessageList)
def list_thread_messages(thread_id: UUID, request: Request, limit: int = 200) -> schemas.ConversationMessageList:
    with _service_context(request) as service:
        messages = service.list_thread_messages(thread_id, limit=max(1, min(limit, 500)))
        items = [schemas.ConversationMessage.model_validate(message) for message in messages]
        return schemas.ConversationMessageList(items=items, total=len(items))
