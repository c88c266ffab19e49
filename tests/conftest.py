"""
Test configuration for ScholarGuard.

Provides fakes for the external collaborators (source adapters, link
validator, clock) and fixtures wiring them into real components, so the
orchestration, ingestion and health logic can be exercised without network
access.
"""

# Standard library imports
import asyncio
import os
from pathlib import Path
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from scholarguard.config import Config
from scholarguard.crawler.circuit_breaker import CircuitBreakerManager
from scholarguard.crawler.http_client import HttpClient
from scholarguard.orchestrator import ScrapeOrchestrator
from scholarguard.pipeline import IngestionPipeline
from scholarguard.quality.scorer import QualityScorer
from scholarguard.storage import InMemoryScholarshipStore
from tests.helpers.fakes import FakeClock, FakeValidator

os.environ["SCHOLARGUARD_DEBUG__TEST_MODE"] = "1"

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


@pytest_asyncio.fixture
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel every task a test left behind, so one hanging adapter cannot leak
    into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breakers(clock) -> CircuitBreakerManager:
    return CircuitBreakerManager(failure_threshold=3, cooldown_seconds=600, clock=clock)


@pytest.fixture
def memory_store() -> InMemoryScholarshipStore:
    return InMemoryScholarshipStore()


@pytest.fixture
def fake_validator() -> FakeValidator:
    return FakeValidator()


@pytest.fixture
def pipeline(memory_store, fake_validator) -> IngestionPipeline:
    return IngestionPipeline(memory_store, fake_validator, QualityScorer())


@pytest.fixture
def orchestrator(breakers, pipeline) -> ScrapeOrchestrator:
    # Fake adapters never fetch, so the client is never opened
    return ScrapeOrchestrator(breakers, pipeline, HttpClient(user_agent="test"), source_timeout=5, queue_size=4)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Configuration writing everything under a temporary directory."""
    config = Config()
    config.storage.db_path = tmp_path / "scholarships.db"
    config.ingestion.rejected_db_path = tmp_path / "rejected.db"
    config.circuit_breaker.state_file = tmp_path / "breakers.json"
    config.monitor.report_file = tmp_path / "last_sweep.json"
    config.monitoring.audit_log_path = str(tmp_path / "audit.jsonl")
    config.scraper.min_request_delay = 0.0
    config.scraper.max_request_delay = 0.0
    config.debug.test_mode = True
    return config


@pytest.fixture
def scholarship_page() -> str:
    """HTML of a well-formed scholarship application page."""
    return """
    <!DOCTYPE html>
    <html>
    <head><title>Merit Scholarship 2025 - Example Foundation</title></head>
    <body>
        <h1>Merit Scholarship 2025</h1>
        <p>The Example Foundation scholarship supports undergraduate students.
           Check the eligibility criteria before you apply.</p>
        <p>Application deadline: 31 December 2025.</p>
        <form action="/submit" method="post">
            <input type="text" name="name">
            <button type="submit">Apply now</button>
        </form>
        <p>Contact the scholarship office at <a href="mailto:help@example.org">help@example.org</a>.</p>
    </body>
    </html>
    """
