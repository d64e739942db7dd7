"""Unit tests for Twitchbot.

This package contains test modules for all components of the Twitchbot application.
Tests use pytest with asyncio support and mock HTTP/network calls via monkeypatch.
"""
