import logging
import sys
from unittest.mock import MagicMock

import pytest

# LockFile imports fcntl, which Windows does not have.
if sys.platform.startswith("win") and "fcntl" not in sys.modules:
    mock_fcntl = MagicMock()
    mock_fcntl.LOCK_EX = 1
    mock_fcntl.LOCK_NB = 2
    mock_fcntl.LOCK_UN = 8
    sys.modules["fcntl"] = mock_fcntl


@pytest.fixture
def clean_root_logger():
    """Removes handlers and level changes made by setup_logging() or main()."""
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(saved_level)
