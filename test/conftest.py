import os

# Settings are read at import time; run every test against the in-process stores.
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("AUDIT_RETRY_BASE_MS", "0")
os.environ.setdefault("NOTIFICATION_POLL_SECONDS", "3600")

import pytest  # noqa: E402

from _helper import make_service  # noqa: E402


@pytest.fixture
def service():
    return make_service()
