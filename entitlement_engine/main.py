import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load env from entitlement_engine/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from entitlement_engine.api import billing, health, subscription
from entitlement_engine.core.config import settings, validate_config
from entitlement_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.core.middleware.request_id import RequestIdMiddleware
from entitlement_engine.features.billing.provider import BillingProvider
from entitlement_engine.features.billing.stripe_provider import StripeProvider
from entitlement_engine.features.entitlements.store import EntitlementStore, SqlEntitlementStore
from entitlement_engine.features.notifications.service import Notifier, get_notifier
from entitlement_engine.features.team.inheritance import InheritanceLookup, NoInheritance


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("entitlement_engine")
    logger.info("Starting entitlement engine...")
    try:
        yield
    finally:
        logger.info("Stopping entitlement engine...")


def create_app(
    store: Optional[EntitlementStore] = None,
    provider: Optional[BillingProvider] = None,
    inheritance: Optional[InheritanceLookup] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Build the ASGI app. Collaborators default to the production wiring."""
    app = FastAPI(title="Entitlement Engine", lifespan=lifespan)

    app.state.store = store if store is not None else SqlEntitlementStore()
    app.state.provider = provider if provider is not None else StripeProvider()
    app.state.inheritance = inheritance if inheritance is not None else NoInheritance()
    app.state.notifier = notifier if notifier is not None else get_notifier()

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscription.router, prefix="/api", tags=["subscription"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(health.root_router, tags=["health"])
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("entitlement_engine.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
