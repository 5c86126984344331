"""
Adapters package for the API service.

Contains the HTTP client wrapper for the business-data API. Adapters
encapsulate base URLs, request shapes and error handling that maps to
shared errors. Keep adapters thin and side-effect free outside of
explicit calls.
"""

from .business_client import BusinessApiClient, BusinessResponse

__all__ = [
    "BusinessApiClient",
    "BusinessResponse",
]
