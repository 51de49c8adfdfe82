# Test configuration
import os

import pytest

# Set test environment variables before importing notesearch modules
os.environ.setdefault("DATABASE_URL", "postgresql+asyncpg://worknote:worknote@db:5432/worknote_test")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-key")
os.environ.setdefault("EMBEDDING_SERVICE_URL", "")


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Let tests that tweak env vars see fresh settings."""
    from notesearch.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
