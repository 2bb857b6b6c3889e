import logging

import pytest


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Undo global root-logger changes (e.g. from main()) between tests."""
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers
