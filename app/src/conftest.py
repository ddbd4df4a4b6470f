import os

import pytest
import structlog


def pytest_collection_modifyitems(config, items):  # noqa: ARG001
    """Skip node_integration tests unless RUN_NODE_INTEGRATION is set.

    Those tests talk to a real node configured through NODE_WS, NODE_CA,
    NODE_CERT and NODE_KEY.
    """
    if os.getenv("RUN_NODE_INTEGRATION") not in {"1", "true", "True", "YES", "yes"}:
        skip_live = pytest.mark.skip(reason="RUN_NODE_INTEGRATION not set; skipping node_integration tests")
        for item in items:
            if "node_integration" in item.keywords:
                item.add_marker(skip_live)


@pytest.fixture(autouse=True)
def _reset_structlog():
    # The CLI tests configure structlog globally; keep that from leaking into other tests
    yield
    structlog.reset_defaults()
