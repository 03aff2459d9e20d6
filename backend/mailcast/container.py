"""Composition root - builds the campaign components once per process"""
import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from mailcast.core.config import Settings
from mailcast.services.audience_service import AudienceResolver
from mailcast.services.campaign_service import CampaignService
from mailcast.services.dispatch_service import CampaignDispatcher
from mailcast.services.resend_client import make_resend_client_factory
from mailcast.services.sync_service import CampaignSynchronizer
from mailcast.tasks.scheduler import DispatchScheduler


@dataclass
class Container:
    settings: Settings
    engine: object
    session_factory: Callable
    resolver: AudienceResolver
    dispatcher: CampaignDispatcher
    synchronizer: CampaignSynchronizer
    scheduler: DispatchScheduler
    campaigns: CampaignService


def build_container(
    settings: Settings,
    engine,
    session_factory: Callable,
    client_factory: Optional[Callable] = None,
    sleep: Callable = asyncio.sleep
) -> Container:
    """Wire the resolver, engines, scheduler and service around one storage handle

    Args:
        client_factory: Zero-argument callable returning a provider client;
            defaults to the Resend HTTP client built from settings
        sleep: Awaitable used for the pause between batches
    """
    client_factory = client_factory or make_resend_client_factory(settings)

    resolver = AudienceResolver()
    dispatcher = CampaignDispatcher(session_factory, resolver, client_factory, settings, sleep=sleep)
    synchronizer = CampaignSynchronizer(session_factory, client_factory, settings)
    scheduler = DispatchScheduler(session_factory, dispatcher, settings)
    campaigns = CampaignService(resolver, scheduler, synchronizer, settings)

    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        resolver=resolver,
        dispatcher=dispatcher,
        synchronizer=synchronizer,
        scheduler=scheduler,
        campaigns=campaigns,
    )


def get_container(request: Request) -> Container:
    """Dependency: the process-wide container stored by the app lifespan"""
    return request.app.state.container


def get_session(request: Request):
    """Dependency: a database session from the container's session factory"""
    db = get_container(request).session_factory()
    try:
        yield db
    finally:
        db.close()
