from .services import (
    GmailAdapterDep,
    GmailAuthenticatorDep,
    ServicesDep,
    TriggerServiceDep,
    TriggerServices,
    WebhookIngestorDep,
    build_services,
    get_services,
)

__all__ = [
    "GmailAdapterDep",
    "GmailAuthenticatorDep",
    "ServicesDep",
    "TriggerServiceDep",
    "TriggerServices",
    "WebhookIngestorDep",
    "build_services",
    "get_services",
]
