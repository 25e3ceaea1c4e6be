import pytest

from mongocrud import ConnectionRegistry, Notification

from tests.fakes import FakeConnector

WIDGETS_URI = 'mongodb://localhost:27017/widgets'

PREFIXES = {'doodad': 'dood'}
PREFIX_ALIASES = {'doodad': 'DD'}


def widgets_config(**overrides):
    config = {
        'schemas': [
            {'name': 'widgets', 'uri': WIDGETS_URI, 'path': 'tests.app.schema.widgets:load_models'},
        ],
        'prefixes': PREFIXES,
        'prefixAliases': PREFIX_ALIASES,
    }
    config.update(overrides)
    return config


@pytest.fixture(autouse=True)
def reports():
    """Fresh report collection per test; returns the live collector"""
    Notification.start()
    with Notification.mute():
        yield Notification
    Notification.start()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def registry(connector):
    return ConnectionRegistry(widgets_config(), connector=connector, reconnect_delay=0.01)
