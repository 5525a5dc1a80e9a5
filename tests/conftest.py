"""
Test Configuration
==================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no I/O, fast
- Integration tests: several components wired together

[FIXTURES]
- fake_clock: controllable time source for deadlines and routes
- metrics: fresh MetricsCollector per test
- make_doc / make_part: document and message factories
- dispatched: list that collects gatherer output

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
"""

import sys
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.monitoring.metrics import MetricsCollector
from messaging.models import (
    Chunk,
    Document,
    Envelope,
    IndexRequest,
    Message,
    Request,
    SearchRequest,
    Status,
    StatusCode,
)


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (several components)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        if asyncio.iscoroutinefunction(getattr(item, "obj", None)):
            item.add_marker(pytest.mark.asyncio)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ============================================================================
# Time
# ============================================================================

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(prefix="test")


# ============================================================================
# Message Factories
# ============================================================================

@pytest.fixture
def make_doc() -> Callable[..., Document]:
    """Factory: make_doc(doc_id, n_chunks=0, text=None)."""
    def _create(doc_id: int, n_chunks: int = 0, text: Optional[str] = None) -> Document:
        chunks = [
            Chunk(doc_id=doc_id, chunk_id=doc_id * 100 + i, content=f"chunk {i} of {doc_id}", offset=i)
            for i in range(n_chunks)
        ]
        return Document(
            doc_id=doc_id,
            content=text if text is not None else f"document {doc_id}",
            chunks=chunks,
            length=n_chunks,
        )
    return _create


@pytest.fixture
def make_part(make_doc) -> Callable[..., Message]:
    """
    Factory for one physical part of a fanned-out request.

    make_part(request_id, doc_ids, num_part=2, timeout=1.0, code=SUCCESS, search=False)
    """
    def _create(
        request_id: int,
        doc_ids: List[int],
        num_part: int = 2,
        timeout: float = 1.0,
        code: StatusCode = StatusCode.SUCCESS,
        description: str = "",
        search: bool = False,
        sender_id: str = "",
    ) -> Message:
        docs = [make_doc(d) for d in doc_ids]
        if search:
            body = SearchRequest(docs=docs, top_k=10, filter_by=["text"])
        else:
            body = IndexRequest(docs=docs, filter_by=["text"])
        envelope = Envelope(
            sender_id=sender_id,
            request_id=request_id,
            timeout=timeout,
            status=Status(code=code, description=description),
            num_part=[num_part],
        )
        return Message(
            envelope=envelope,
            request=Request(request_id=request_id, body=body),
        )
    return _create


@pytest.fixture
def dispatched() -> List[Message]:
    return []
