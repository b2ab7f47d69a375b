import os
from pathlib import Path

import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--env",
        action="store",
        default="test",
        help="Config environment to run tests on",
    )


def pytest_sessionstart(session):
    """Pytest hook to run before collecting tests.

    Fetch and activate the domain by pushing the associated domain_context. The activated domain can then be referred to elsewhere as `current_domain`
    """
    os.environ["PROTEAN_ENV"] = session.config.option.env

    # Registers every element of the checkout domain
    import ordering.checkout.engine  # noqa: F401
    from shared.domain import checkout

    checkout.init(traverse=False)
    checkout.domain_context().push()


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        # Get the test file path relative to the tests directory
        test_path = Path(item.fspath)

        # Mark tests based on their directory
        if "/domain/" in str(test_path):
            item.add_marker(pytest.mark.domain)
        elif "/application/" in str(test_path):
            item.add_marker(pytest.mark.application)
        elif "/integration/" in str(test_path):
            item.add_marker(pytest.mark.integration)
            # Integration tests are often slower
            if not any(m.name == "fast" for m in item.iter_markers()):
                item.add_marker(pytest.mark.slow)


@pytest.fixture(autouse=True)
def run_around_tests():
    """Fixture to automatically cleanup infrastructure after every test"""
    yield

    from protean import current_domain

    from payments.gateway import reset_gateway
    from shared.logging import clear_context

    # Clear all databases
    for _, provider in current_domain.providers.items():
        provider._data_reset()

    # Drain event stores
    current_domain.event_store.store._data_reset()

    reset_gateway()
    clear_context()


@pytest.fixture
def settings():
    from shared.config import load_settings

    return load_settings()


@pytest.fixture
def locks():
    from shared.persistence import RowLocks

    return RowLocks()


@pytest.fixture
def sequences():
    from shared.persistence import Sequences

    return Sequences()


@pytest.fixture
def stored_events():
    """Read back the events of one type that reached the event store, oldest first."""
    from protean import current_domain

    def read(event_cls):
        stream = event_cls.meta_.part_of.meta_.stream_category
        return [
            message.to_domain_object()
            for message in current_domain.event_store.store.read(stream)
            if message.metadata and message.metadata.headers and message.metadata.headers.type == event_cls.__type__
        ]

    return read
