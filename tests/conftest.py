import pytest

from storage_jobs.adapters.storage import get_storage_disk
from storage_jobs.settings import get_settings

pytest_plugins = [
    "tests.fixtures.aws_fixtures",
    "tests.fixtures.storage_fixtures",
    "tests.fixtures.queue_fixtures",
]


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch, tmp_path):
    """Every test starts from default settings, no .env file and a fresh storage disk."""
    for var in (
        "DEPLOYMENT_MODE",
        "STORAGE_BACKEND",
        "QUEUE_BACKEND",
        "STORAGE_DIR",
        "DATABASE_URL",
        "QUEUE_CONNECTION_URL",
        "IS_MULTITENANT",
        "MULTITENANT_DATABASE_URL",
        "QUEUE_ENABLE_WORKERS",
        "AWS_ENDPOINT_URL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)

    get_settings.cache_clear()
    get_storage_disk.cache_clear()
    yield
    get_settings.cache_clear()
    get_storage_disk.cache_clear()
