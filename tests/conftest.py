"""Shared fixtures for sessiondeck tests."""

import pytest

from sessiondeck.config import SessionConfig
from sessiondeck.core.context import SessionContext


@pytest.fixture
def file_context(tmp_path):
    """Factory for a file-backed SessionContext rooted in tmp_path.

    Use this instead of SessionContext.in_memory when requests are served
    from another thread (TestClient): each thread opens its own connection.
    """
    created = []

    def _create(transport=None, **overrides):
        config = SessionConfig(
            api_base_url="http://api.test", data_dir=tmp_path, **overrides
        )
        ctx = SessionContext.from_config(config, transport=transport)
        created.append(ctx)
        return ctx

    yield _create
    for ctx in created:
        ctx.close()
