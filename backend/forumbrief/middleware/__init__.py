"""Middleware package for FastAPI application."""

from forumbrief.middleware.request_id import RequestIdMiddleware

__all__ = ["RequestIdMiddleware"]
