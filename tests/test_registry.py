import copy

import pytest

from satosa_authproc import definitions as d
from satosa_authproc.authsources import AuthSourceRegistry, LdapUserPassSource, SAML2SPSource, StaticUserPassSource
from satosa_authproc.exceptions import ConfigError, ConfigErrorKind, StateError, StateErrorKind

from .conftest import location, query

SOURCES = {
    'local': {
        'type': 'userpass',
        'login_url': 'https://proxy.example.org/login',
        'resume_url': 'https://proxy.example.org/authproc/resume',
        'users': {'alice': {'password': 'wonderland', 'attributes': {'uid': 'alice'}}},
        'authproc': [
            {'module': 'core:AttributeAdd', 'config': {'attributes': {'affiliation': 'member'}}},
            {
                'module': 'redirect_url',
                'name': 'adfs',
                'config': {'self_entityid': 'https://proxy.example.org', 'redirect_attr_name': 'redirect'},
            },
            {'module': 'core:AttributeAdd', 'config': {'attributes': {'affiliation': 'staff'}}},
        ],
    },
    'corp-ldap': {
        'type': 'ldap',
        'servers': 'ldap://ldap.example.org',
        'dnpattern': 'uid=%username%,dc=example,dc=org',
    },
    'default-sp': {
        'type': 'saml2-sp',
        'entityid': 'https://proxy.example.org/sp.xml',
        'idp': 'https://idp.example.org/idp.xml',
    },
    'broken': {
        'type': 'kerberos',
    },
}


@pytest.fixture
def registry(store, auth_callback):
    return AuthSourceRegistry(copy.deepcopy(SOURCES), store, auth_callback)


class TestLookup:

    @pytest.mark.parametrize('source_id, cls', [
        ('local', StaticUserPassSource),
        ('corp-ldap', LdapUserPassSource),
        ('default-sp', SAML2SPSource),
    ])
    def test_sources_are_created_once(self, registry, source_id, cls) -> None:
        source = registry.get(source_id)

        assert isinstance(source, cls)
        assert registry.get(source_id) is source
        assert source.registry is registry

    def test_missing(self, registry) -> None:
        with pytest.raises(ConfigError) as exc_info:
            registry.get('nowhere')
        assert exc_info.value.kind == ConfigErrorKind.MISSING_AUTHSOURCE

    def test_unknown_type(self, registry) -> None:
        with pytest.raises(ConfigError) as exc_info:
            registry.get('broken')
        assert exc_info.value.kind == ConfigErrorKind.WRONG_AUTHSOURCE_TYPE

    def test_expected_type(self, registry) -> None:
        assert registry.get_config('corp-ldap', expected_type='ldap') == SOURCES['corp-ldap']
        with pytest.raises(ConfigError) as exc_info:
            registry.get_config('local', expected_type='ldap')
        assert exc_info.value.kind == ConfigErrorKind.WRONG_AUTHSOURCE_TYPE

    def test_from_yaml(self, tmp_path, store, auth_callback) -> None:
        path = tmp_path / 'authsources.yaml'
        path.write_text('local:\n  type: userpass\n  login_url: https://proxy.example.org/login\n')

        registry = AuthSourceRegistry.from_yaml(str(path), store, auth_callback)

        assert isinstance(registry.get('local'), StaticUserPassSource)


class TestResume:

    def test_login_suspend_and_resume(self, registry, context, auth_callback) -> None:
        source = registry.get('local')
        state = source.new_state()
        token = query(location(source.begin_auth(context, state)))[d.STATE_PARAM]
        source.users['alice']['attributes']['redirect'] = 'https://adfs.example.org/select-role'

        response = source.handle_login(context, token, 'alice', 'wonderland')

        url = location(response)
        assert url.startswith('https://adfs.example.org/select-role?')
        params = query(url)
        assert params['wtrealm'] == 'https://proxy.example.org'
        assert params['wreply'].startswith('https://proxy.example.org/authproc/resume?AuthState=')
        assert auth_callback.calls == []

        context.request = {d.STATE_PARAM: params[d.STATE_PARAM]}
        registry.resume_pipeline(context)

        data = auth_callback.calls[0][1]
        assert data.attributes['affiliation'] == ['member', 'staff']
        assert 'redirect' not in data.attributes

    def test_resume_without_token(self, registry, context) -> None:
        with pytest.raises(StateError) as exc_info:
            registry.resume_pipeline(context)
        assert exc_info.value.kind == StateErrorKind.NOT_FOUND

    def test_resume_refuses_login_stage(self, registry, context, store) -> None:
        source = registry.get('local')
        token = query(location(source.begin_auth(context, source.new_state())))[d.STATE_PARAM]
        context.request = {d.STATE_PARAM: token}

        with pytest.raises(StateError) as exc_info:
            registry.resume_pipeline(context)
        assert exc_info.value.kind == StateErrorKind.STAGE_MISMATCH


def test_register_endpoints(store, auth_callback) -> None:
    sources = {key: copy.deepcopy(value) for key, value in SOURCES.items() if key != 'broken'}
    registry = AuthSourceRegistry(sources, store, auth_callback)

    patterns = [pattern for pattern, _ in registry.register_endpoints()]

    assert patterns == [
        '^authproc/resume$', '^local/login$', '^corp-ldap/login$',
        '^default-sp/acs/post$', '^default-sp/acs/redirect$',
    ]
