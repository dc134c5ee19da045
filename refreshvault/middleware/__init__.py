"""Middleware module for refreshvault."""

from refreshvault.middleware.admin_auth import AdminAuthMiddleware

__all__ = ["AdminAuthMiddleware"]
