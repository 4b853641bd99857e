"""Test helpers for generation and API tests."""

from tests.helpers.fake_provider import FakeProviderAdapter, StreamCall

__all__ = ["FakeProviderAdapter", "StreamCall"]
