"""Service dependencies for FastAPI endpoints.

Services are built once per application in the lifespan and kept on
``app.state.services``; endpoints reach them through the dependencies below.
"""

from dataclasses import dataclass
from typing import Annotated

from autopilot_common.config import Database, get_settings
from autopilot_triggers.dispatcher import Dispatcher, TemporalDispatcher
from autopilot_triggers.ingestion import (
    GmailClientFactory,
    GmailPushAdapter,
    GmailPushAuthenticator,
    HttpxGmailClientFactory,
    WebhookIngestor,
    stored_token_provider,
)
from autopilot_triggers.schedule_runner import ScheduleRunner
from autopilot_triggers.trigger_events import SnapshotLimits, TriggerEventManager
from autopilot_triggers.trigger_service import TriggerService
from fastapi import Depends, Request


@dataclass
class TriggerServices:
    """Everything the HTTP layer and background loops need, wired together."""

    database: Database
    dispatcher: Dispatcher
    event_manager: TriggerEventManager
    trigger_service: TriggerService
    schedule_runner: ScheduleRunner
    webhook_ingestor: WebhookIngestor
    gmail_adapter: GmailPushAdapter
    gmail_authenticator: GmailPushAuthenticator


def build_services(
    database: Database,
    dispatcher: Dispatcher | None = None,
    gmail_client_factory: GmailClientFactory | None = None,
    gmail_authenticator: GmailPushAuthenticator | None = None,
) -> TriggerServices:
    """Wire the trigger services around one database."""
    settings = get_settings()
    session_factory = database.session_factory
    dispatcher = dispatcher or TemporalDispatcher(settings.dispatch)
    event_manager = TriggerEventManager(
        session_factory, SnapshotLimits.from_settings(settings.triggers)
    )
    gmail_client_factory = gmail_client_factory or HttpxGmailClientFactory(
        stored_token_provider(session_factory), settings=settings.ingestion
    )

    return TriggerServices(
        database=database,
        dispatcher=dispatcher,
        event_manager=event_manager,
        trigger_service=TriggerService(
            session_factory,
            event_manager,
            dispatcher,
            settings=settings.triggers,
            dispatch_settings=settings.dispatch,
        ),
        schedule_runner=ScheduleRunner(
            session_factory, event_manager, dispatcher, dispatch_settings=settings.dispatch
        ),
        webhook_ingestor=WebhookIngestor(
            session_factory,
            event_manager,
            dispatcher,
            settings=settings.triggers,
            dispatch_settings=settings.dispatch,
        ),
        gmail_adapter=GmailPushAdapter(
            session_factory,
            event_manager,
            dispatcher,
            gmail_client_factory,
            settings=settings.ingestion,
            dispatch_settings=settings.dispatch,
        ),
        gmail_authenticator=gmail_authenticator or GmailPushAuthenticator(settings.ingestion),
    )


def get_services(request: Request) -> TriggerServices:
    return request.app.state.services


ServicesDep = Annotated[TriggerServices, Depends(get_services)]


def get_trigger_service(services: ServicesDep) -> TriggerService:
    return services.trigger_service


def get_webhook_ingestor(services: ServicesDep) -> WebhookIngestor:
    return services.webhook_ingestor


def get_gmail_adapter(services: ServicesDep) -> GmailPushAdapter:
    return services.gmail_adapter


def get_gmail_authenticator(services: ServicesDep) -> GmailPushAuthenticator:
    return services.gmail_authenticator


TriggerServiceDep = Annotated[TriggerService, Depends(get_trigger_service)]
WebhookIngestorDep = Annotated[WebhookIngestor, Depends(get_webhook_ingestor)]
GmailAdapterDep = Annotated[GmailPushAdapter, Depends(get_gmail_adapter)]
GmailAuthenticatorDep = Annotated[GmailPushAuthenticator, Depends(get_gmail_authenticator)]
