# tests/conftest.py
import pytest

from helpers import NOW
from lambdas.ingest_issues.extractor import IssueExtractor
from lambdas.ingest_issues.issue_store import MemoryIssueStore
from lambdas.ingest_issues.models import Actor, AppSettings


@pytest.fixture
def settings() -> AppSettings:
    """Settings isolated from the environment and any local .env file."""
    return AppSettings(
        _env_file=None,
        STORE_MAX_ATTEMPTS=3,
        STORE_RETRY_BASE_DELAY=0.5,
        SUBSCRIPTION_FILTER_PREFIX="issues-",
        BATCH_DEADLINE_SECONDS=60,
        DEADLINE_HEADROOM_SECONDS=5,
    )


@pytest.fixture
def store() -> MemoryIssueStore:
    return MemoryIssueStore(clock=lambda: NOW)


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def extractor(store, settings, sleeps) -> IssueExtractor:
    return IssueExtractor(store, Actor(type="system"), settings, sleep=sleeps.append)
