"""
HTTP exception utilities for common error patterns.

Provides helper functions to reduce boilerplate for 404s and for the
structured error bodies returned by refresh endpoints.
"""

from typing import TypeVar

from fastapi import HTTPException
from fastapi.responses import JSONResponse

T = TypeVar("T")


def require_resource(resource: T | None, detail: str = "Resource not found") -> T:
    """
    Raise 404 if resource is None, otherwise return the resource.

    Usage:
        feed = require_resource(db.get_feed(id), "Feed not found")
    """
    if resource is None:
        raise HTTPException(status_code=404, detail=detail)
    return resource


def require_feed(feed: T | None) -> T:
    """Raise 404 if feed is None."""
    return require_resource(feed, "Feed not found")


def require_rule(rule: T | None) -> T:
    """Raise 404 if automation rule is None."""
    return require_resource(rule, "Rule not found")


class RefreshFailedError(Exception):
    """A manual refresh ran and failed; rendered as a structured 500."""

    def __init__(self, details: str):
        self.details = details
        super().__init__(details)


def refresh_failed_response(error: RefreshFailedError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": "Failed to refresh feed", "details": error.details},
    )
