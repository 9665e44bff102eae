from urllib.parse import parse_qs, urlparse

import pytest
import satosa.response
from cryptography.fernet import Fernet
from ldap3.core.exceptions import LDAPSocketOpenError
from satosa.context import Context
from satosa.state import State

from satosa_authproc.state_store import StateStore


class MemoryRedis(object):
    """ The part of the redis client StateStore uses, kept in a dict """
    def __init__(self):
        self.data = {}
        self.expiry = {}

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)


@pytest.fixture
def redis_client():
    return MemoryRedis()


@pytest.fixture
def encryption_key():
    return Fernet.generate_key()


@pytest.fixture
def store(encryption_key, redis_client):
    return StateStore(encryption_key, redis_client=redis_client)


@pytest.fixture
def context():
    context = Context()
    context.state = State()
    context.request = {}
    return context


class AuthCallback(object):
    """ Stands in for the proxy core receiving the finished identity """
    def __init__(self):
        self.calls = []

    def __call__(self, context, data):
        self.calls.append((context, data))
        return satosa.response.Response('authenticated')


@pytest.fixture
def auth_callback():
    return AuthCallback()


def location(response):
    return dict(response.headers)['Location']


def query(url):
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


class FakeDirectory(object):
    """
    A directory behind a set of server URIs. `accepting` servers bind when the
    credentials match `accounts`, `unreachable` servers fail to connect, any other
    server refuses every bind. `results` maps a filter substring to search entries.
    """
    def __init__(self, accepting=(), unreachable=(), accounts=None, results=None):
        self.accepting = set(accepting)
        self.unreachable = set(unreachable)
        self.accounts = accounts or {}
        self.results = results or {}
        self.connections = []

    def connect(self, settings):
        connection = FakeConnection(self, settings)
        self.connections.append(connection)
        return connection


class FakeConnection(object):
    def __init__(self, directory, settings):
        self.directory = directory
        self.settings = settings
        self.bound = False
        self.unbound = False
        self.tls = False
        self.response = []
        self.searches = []

    def open(self):
        if self.settings.uri in self.directory.unreachable:
            raise LDAPSocketOpenError('unable to open socket')

    def start_tls(self):
        self.tls = True

    def bind(self):
        self.open()
        if self.settings.uri not in self.directory.accepting:
            return False
        self.bound = self.directory.accounts.get(self.settings.username) == self.settings.password
        return self.bound

    def search(self, search_base, search_filter, search_scope=None, attributes=None):
        self.searches.append((search_base, search_filter, attributes))
        self.response = []
        for fragment, entries in self.directory.results.items():
            if fragment in search_filter:
                self.response = [
                    {'type': 'searchResEntry', 'dn': dn, 'attributes': attrs} for dn, attrs in entries
                ]
        return bool(self.response)

    def unbind(self):
        self.unbound = True
        self.bound = False
        return True
