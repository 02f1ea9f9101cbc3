import os
import sys

import pytest

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)


@pytest.fixture(autouse=True)
def _isolated_process_state(monkeypatch):
    """Fresh Settings, store and service per test; no log files from app startup."""
    from bundle_integrity.services import bundle_service, document_store
    from bundle_integrity.utils.settings import get_settings

    monkeypatch.setenv("LOG_TO_FILE", "0")
    monkeypatch.setattr(document_store, "_CACHED_STORE", None)
    monkeypatch.setattr(document_store, "_CACHED_STORE_CONFIG", None)
    monkeypatch.setattr(bundle_service, "_CACHED_SERVICE", None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def service():
    """In-memory BundleService with the default fix thresholds."""
    from bundle_integrity.core.autofix import FixThresholds
    from bundle_integrity.services.bundle_service import BundleService
    from bundle_integrity.services.document_store import InMemoryDocumentStore

    return BundleService(InMemoryDocumentStore(), thresholds=FixThresholds())
