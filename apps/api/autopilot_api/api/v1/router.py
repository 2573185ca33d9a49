"""API v1 router.

Administrative trigger endpoints and inbound delivery endpoints share the
``/v1`` prefix; deliveries authenticate themselves (signature or push token).
"""

from fastapi import APIRouter

from . import execution_triggers, integrations, webhooks

v1_router = APIRouter(prefix="/v1")

v1_router.include_router(execution_triggers.router)
v1_router.include_router(webhooks.router)
v1_router.include_router(integrations.router)
