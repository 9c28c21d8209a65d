"""
Service layer for business logic.

Services encapsulate business logic, keeping routes as thin HTTP adapters.
Each service receives its dependencies via constructor injection.

Usage in routes:
    from ..services import FeedServiceDep

    @router.get("/feeds")
    async def list_feeds(service: FeedServiceDep):
        return service.list_feeds()
"""

from typing import Annotated

from fastapi import Depends

from ..config import state, get_db
from ..database import Database

from .feed_service import FeedService
from .rule_service import RuleService

__all__ = [
    # Services
    "FeedService",
    "RuleService",
    # Dependency factories
    "get_feed_service",
    "get_rule_service",
    # Type aliases for dependency injection
    "FeedServiceDep",
    "RuleServiceDep",
]


def get_feed_service(db: Annotated[Database, Depends(get_db)]) -> FeedService:
    """Dependency to get FeedService instance."""
    return FeedService(
        db=db,
        feed_parser=state.feed_parser,
        scheduler=state.scheduler,
    )


def get_rule_service(db: Annotated[Database, Depends(get_db)]) -> RuleService:
    """Dependency to get RuleService instance."""
    return RuleService(
        db=db,
        rule_engine=state.rule_engine,
    )


# Re-export the service factories for convenience
FeedServiceDep = Annotated[FeedService, Depends(get_feed_service)]
RuleServiceDep = Annotated[RuleService, Depends(get_rule_service)]
