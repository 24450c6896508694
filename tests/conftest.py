import pytest
from fastapi.testclient import TestClient

from app import create_app
from registry import RoomRegistry
from sessions import SessionManager


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def sessions(registry):
    return SessionManager(registry)


@pytest.fixture
def app(registry):
    return create_app(registry=registry)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def anyio_backend():
    return "asyncio"
