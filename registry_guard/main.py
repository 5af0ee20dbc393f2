"""Main FastAPI application entry point."""
import logging
from typing import Optional

from fastapi import FastAPI

from registry_guard import config
from registry_guard.api.routes import router
from registry_guard.database import Base, engine
from registry_guard.logging_config import configure_logging
# Import models to register them with SQLAlchemy Base
from registry_guard.models.audit import AuditEvent  # noqa: F401
from registry_guard.models.domain import Alias, Entity, GroupAccess, MetadataEntry  # noqa: F401
from registry_guard.services.challenge import ChallengeService, FailureLimiter
from registry_guard.services.collaborators import Hooks, LoginRegistry
from registry_guard.services.dispatcher import KeyedLocks

logger = logging.getLogger(__name__)


def create_app(create_tables: bool = True, api_token: Optional[str] = None) -> FastAPI:
    configure_logging()

    if create_tables:
        Base.metadata.create_all(bind=engine)

    app = FastAPI(
        title="Registry Guard",
        description="Authorization and two-phase confirmation for account and group registry commands.",
        version="0.1.0"
    )

    app.state.api_token = config.API_TOKEN if api_token is None else api_token
    if not app.state.api_token:
        logger.warning("REGISTRY_API_TOKEN is not set; every /api call will be refused")

    # Process-wide collaborators shared by every request
    app.state.logins = LoginRegistry()
    app.state.hooks = Hooks()
    app.state.challenges = ChallengeService()
    app.state.drop_limiter = FailureLimiter(
        max_failures=config.DROP_CHALLENGE_MAX_FAILURES,
        window_seconds=config.DROP_CHALLENGE_WINDOW_SECONDS
    )
    app.state.locks = KeyedLocks()

    app.include_router(router, prefix="/api", tags=["Registry"])

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": "Registry Guard"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
