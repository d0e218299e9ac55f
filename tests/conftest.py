"""Shared pytest fixtures for the chrome_devtools test suite."""

import pytest

from fakes import FakeBrowser, FakeTransport


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def browser_transport(fake_browser):
    return FakeTransport(responder=fake_browser)
