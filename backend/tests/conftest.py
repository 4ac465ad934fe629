import os
import sys
import pytest

# Ensure the backend root (containing the `dartlink` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from dartlink import create_app, db, socketio
from dartlink.client.gateway import HttpMatchGateway, GatewayUnavailable
from dartlink.client.lobby import ManualScheduler
from dartlink.client.navigation import NavigationGuard


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    CHALLENGE_EXPIRY_SEC = 86400
    JOIN_WINDOW_SEC = 300
    EXPIRY_SWEEP_INTERVAL_SEC = 0
    LOG_LEVEL = 'DEBUG'


PLAYERS = ('alice', 'bob', 'carol')


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import dartlink.models  # noqa: F401
        db.create_all()
    # No context stays pushed: each request gets its own, so the logged-in
    # user is never shared between test clients
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_db_app(tmp_path):
    """App on a SQLite file, so each thread's session gets its own connection."""
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'dartlink.db'}"

    application = create_app(FileConfig)
    with application.app_context():
        import dartlink.models  # noqa: F401
        db.create_all()
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def app_ctx(flask_app):
    with flask_app.app_context():
        yield flask_app
        db.session.remove()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def users(flask_app):
    """Seed alice, bob and carol; returns {name: user_id}."""
    from dartlink.models import User
    ids = {}
    with flask_app.app_context():
        for name in PLAYERS:
            user = User(username=name, display_name=name.capitalize())
            user.set_password('password')
            db.session.add(user)
        db.session.commit()
        for name in PLAYERS:
            ids[name] = User.query.filter_by(username=name).first().id
    return ids


def login(test_client, username, password='password'):
    res = test_client.post('/login', json={'username': username, 'password': password})
    assert res.status_code == 200, res.get_json()
    return res.get_json()['user']


@pytest.fixture()
def player_clients(flask_app, users):
    """One logged-in Flask test client per seeded player."""
    clients = {}
    for name in PLAYERS:
        test_client = flask_app.test_client()
        login(test_client, name)
        clients[name] = test_client
    return clients


@pytest.fixture()
def sio_for(flask_app):
    """Factory for Socket.IO test clients sharing an HTTP client's session cookie."""
    created = []

    def _make(http_client):
        test_client = socketio.test_client(flask_app, flask_test_client=http_client, namespace='/ws')
        created.append(test_client)
        return test_client

    yield _make
    for test_client in created:
        if test_client.is_connected('/ws'):
            test_client.disconnect(namespace='/ws')


class InProcessGateway(HttpMatchGateway):
    """The real HTTP gateway, sending through a Flask test client instead of the network."""

    def __init__(self, test_client, user=None):
        super().__init__('')
        self.test_client = test_client
        self.user = user
        self.calls = []

    def _send(self, method, path, payload=None, params=None):
        self.calls.append((method, path))
        response = self.test_client.open(path, method=method, json=payload, query_string=params)
        return response.status_code, response.get_json(silent=True)


class FlakyGateway(InProcessGateway):
    """Fails the first ``failures`` calls whose method matches, before or after sending."""

    def __init__(self, test_client, user=None, failures=1, method='GET', after_send=False):
        super().__init__(test_client, user)
        self.failures = failures
        self.method = method
        self.after_send = after_send

    def _send(self, method, path, payload=None, params=None):
        if method == self.method and self.failures > 0:
            self.failures -= 1
            if self.after_send:
                # Request reached the server but the response was lost
                super()._send(method, path, payload, params)
            raise GatewayUnavailable(f'simulated failure on {method} {path}')
        return super()._send(method, path, payload, params)


@pytest.fixture()
def gateways(player_clients, users):
    return {
        name: InProcessGateway(player_clients[name], {'id': users[name], 'username': name})
        for name in PLAYERS
    }


@pytest.fixture()
def scheduler():
    return ManualScheduler()


@pytest.fixture()
def nav_guard():
    return NavigationGuard()


@pytest.fixture()
def flaky_gateway(player_clients, users):
    """Factory: a player's gateway whose first calls fail in transport."""
    def _make(name, **kwargs):
        return FlakyGateway(player_clients[name], {'id': users[name], 'username': name}, **kwargs)
    return _make
