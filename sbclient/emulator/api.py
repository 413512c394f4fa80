"""
Emulator HTTP API

FastAPI app serving the paged Atom/XML listing endpoints of an
``InMemoryBroker``:

- ``GET /$Resources/Queues``
- ``GET /$Resources/Topics``
- ``GET /{topic}/Subscriptions/``
- ``GET /{topic}/Subscriptions/{subscription}/Rules/``

Each accepts ``$skip`` and ``$top`` and answers with a feed whose ``next``
link carries the following ``$skip`` while more entities remain.

Author: sbclient contributors
Date: 2026-10-17
"""

from typing import Optional

from fastapi import APIRouter, FastAPI, Query, Request, Response, status

from .. import __version__
from ..atom import render_feed
from ..constants import MAX_PAGE_SIZE, XML_MEDIA_TYPE_ATOM
from ..logging_utils import StructuredLogger
from .broker import InMemoryBroker
from .error_handlers import register_exception_handlers
from .middleware import CorrelationMiddleware


logger = StructuredLogger('sbclient.emulator.api')


def _broker(request: Request) -> InMemoryBroker:
    return request.app.state.broker


async def _feed_response(broker: InMemoryBroker, path: str, skip: int, top: Optional[int]) -> Response:
    page = await broker.list_feed(path, skip=skip, top=top)
    logger.debug(
        f"feed_served: {path} skip={skip} entries={len(page.entries)}",
        operation="feed_served",
        path=path,
        skip=skip,
        top=top,
        entry_count=len(page.entries),
        has_next=page.next_link is not None,
    )
    return Response(
        content=render_feed(page.title, page.feed_id, page.entries, page.next_link),
        media_type=XML_MEDIA_TYPE_ATOM,
        status_code=status.HTTP_200_OK,
    )


router = APIRouter(tags=["management"])


@router.get("/$Resources/Queues", summary="List queues")
async def list_queues(
    request: Request,
    skip: int = Query(default=0, ge=0, alias="$skip"),
    top: Optional[int] = Query(default=None, ge=1, le=MAX_PAGE_SIZE, alias="$top"),
) -> Response:
    return await _feed_response(_broker(request), "$Resources/Queues", skip, top)


@router.get("/$Resources/Topics", summary="List topics")
async def list_topics(
    request: Request,
    skip: int = Query(default=0, ge=0, alias="$skip"),
    top: Optional[int] = Query(default=None, ge=1, le=MAX_PAGE_SIZE, alias="$top"),
) -> Response:
    return await _feed_response(_broker(request), "$Resources/Topics", skip, top)


@router.get("/{topic_name}/Subscriptions/", summary="List subscriptions of a topic")
async def list_subscriptions(
    request: Request,
    topic_name: str,
    skip: int = Query(default=0, ge=0, alias="$skip"),
    top: Optional[int] = Query(default=None, ge=1, le=MAX_PAGE_SIZE, alias="$top"),
) -> Response:
    """
    Azure Management API: GET https://{namespace}/{topic}/Subscriptions/

    Raises:
        404 Not Found: Topic not found
    """
    return await _feed_response(_broker(request), f"{topic_name}/Subscriptions/", skip, top)


@router.get(
    "/{topic_name}/Subscriptions/{subscription_name}/Rules/",
    summary="List rules of a subscription",
)
async def list_rules(
    request: Request,
    topic_name: str,
    subscription_name: str,
    skip: int = Query(default=0, ge=0, alias="$skip"),
    top: Optional[int] = Query(default=None, ge=1, le=MAX_PAGE_SIZE, alias="$top"),
) -> Response:
    """
    Azure Management API: GET https://{namespace}/{topic}/Subscriptions/{subscription}/Rules/

    Raises:
        404 Not Found: Topic or subscription not found
    """
    return await _feed_response(
        _broker(request),
        f"{topic_name}/Subscriptions/{subscription_name}/Rules/",
        skip,
        top,
    )


def create_app(broker: Optional[InMemoryBroker] = None) -> FastAPI:
    """
    Build the emulator app around ``broker`` (a fresh empty broker by default).
    """
    app = FastAPI(
        title="sbclient emulator",
        description="In-memory Service Bus management endpoint",
        version=__version__,
    )
    app.state.broker = broker or InMemoryBroker()
    app.include_router(router)
    app.add_middleware(CorrelationMiddleware)
    register_exception_handlers(app)

    @app.get("/health", summary="Health check")
    async def health() -> dict:
        return {"status": "healthy", "namespace": app.state.broker.namespace}

    return app
