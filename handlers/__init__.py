"""Outbound communication helpers for the Twitch APIs.

This package provides the asynchronous HTTP client used for every Helix and OAuth call.
"""

from handlers.async_comm import ApiRequest, ApiResponse, AsyncCommError, AsyncCommTimeoutError, AsyncHttp

__all__: list[str] = [
    "ApiRequest",
    "ApiResponse",
    "AsyncCommError",
    "AsyncCommTimeoutError",
    "AsyncHttp",
]
