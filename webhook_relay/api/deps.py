"""
FastAPI dependencies.

The application keeps its databases on app.state, so tests can build an app
around already-connected databases without running the lifespan.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.config import Settings
from webhook_relay.db.connection import Database
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.service import SubmissionService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Database:
    return request.app.state.store


def get_queue(request: Request) -> DispatchQueue:
    return request.app.state.queue


async def get_store_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """
    Dependency for getting a job store session.

    Yields:
        AsyncSession: Committed on success, rolled back on error.
    """
    async with get_store(request).session() as session:
        yield session


def get_submission_service(request: Request) -> SubmissionService:
    return SubmissionService(
        store=get_store(request),
        queue=get_queue(request),
        settings=get_app_settings(request),
    )


StoreSession = Annotated[AsyncSession, Depends(get_store_session)]
Submissions = Annotated[SubmissionService, Depends(get_submission_service)]
