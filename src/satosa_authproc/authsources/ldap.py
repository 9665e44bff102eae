import logging
from typing import List, Optional

import ldap3
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from ..directory import ServerConfig, bind_first, normalize_servers, resolve_servers, search, values_of
from ..exceptions import ConfigError, ConfigErrorKind, LoginError, LoginErrorKind
from .userpass import UserPassSource

logger = logging.getLogger(__name__)


class LdapSourceConfig(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    servers: List[ServerConfig] = Field(min_length=1)
    debug: bool = False
    timeout: float = 0
    dnpattern: Optional[str] = None
    search_enable: bool = Field(False, alias='search.enable')
    search_base: List[str] = Field(default_factory=list, alias='search.base')
    search_attributes: List[str] = Field(default_factory=list, alias='search.attributes')
    search_username: Optional[str] = Field(None, alias='search.username')
    search_password: Optional[SecretStr] = Field(None, alias='search.password')
    priv_read: bool = Field(False, alias='priv.read')
    priv_username: Optional[str] = Field(None, alias='priv.username')
    priv_password: Optional[SecretStr] = Field(None, alias='priv.password')
    attributes: Optional[List[str]] = None

    @field_validator('servers', mode='before')
    @classmethod
    def _servers(cls, value):
        return normalize_servers(value)

    @field_validator('search_base', mode='before')
    @classmethod
    def _search_base(cls, value):
        return [value] if isinstance(value, str) else value


def connection_layer(source_config):
    """
    The connection parameters of an ldap authsource, expressed in directory filter
    option names. The source configuration itself is left untouched.
    """
    search_enabled = bool(source_config.get('search.enable'))
    layer = {
        'ldap.servers': source_config.get('servers'),
        'ldap.debug': source_config.get('debug'),
        'ldap.timeout': source_config.get('timeout'),
        'ldap.basedn': source_config.get('search.base') if search_enabled else None,
        'ldap.username': source_config.get('search.username') if search_enabled else None,
        'ldap.password': source_config.get('search.password') if search_enabled else None,
    }
    if source_config.get('priv.read'):
        layer['ldap.username'] = source_config.get('priv.username')
        layer['ldap.password'] = source_config.get('priv.password')

    search_attributes = source_config.get('search.attributes')
    if search_enabled and isinstance(search_attributes, list) and len(search_attributes) == 1:
        layer['attribute.username'] = search_attributes[0]
    return layer


def _secret(value):
    return value.get_secret_value() if value is not None else None


class LdapUserPassSource(UserPassSource):
    """
    Username/password authentication against an LDAP directory.

    The user DN is built from `dnpattern` (with %username% replaced), or found by
    searching `search.base` for `search.attributes` when `search.enable` is set. The
    user's attributes are read with the user's own bind, or with the `priv.*`
    credentials when `priv.read` is set.
    """
    TYPE = 'ldap'
    title = 'ldap:LDAP : '

    def __init__(self, source_id, config: dict, *args, connection_factory=None, **kwargs):
        super().__init__(source_id, config, *args, **kwargs)
        try:
            self.options = LdapSourceConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG,
                              message=f'Invalid configuration for authsource {source_id}: {e}') from e
        if not self.options.search_enable and not self.options.dnpattern:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG,
                              message=f'Authsource {source_id} needs either dnpattern or search.enable')
        self.connection_factory = connection_factory

    def _servers(self, username, password):
        return resolve_servers(self.options.servers, timeout=self.options.timeout, debug=self.options.debug,
                               username=username, password=password)

    def _bind(self, username, password):
        return bind_first(self._servers(username, password), self.connection_factory, title=self.title)

    def _find_dn(self, username):
        options = self.options
        try:
            connection = self._bind(options.search_username, _secret(options.search_password))
        except ConfigError as e:
            raise LoginError(LoginErrorKind.DIRECTORY_UNAVAILABLE) from e
        try:
            value = escape_filter_chars(username)
            terms = ''.join(f'({attribute}={value})' for attribute in options.search_attributes)
            entries = search(connection, options.search_base, f'(|{terms})', ['1.1'])
        finally:
            connection.unbind()

        if len(entries) != 1:
            logger.info(f"{self.title}{len(entries)} entries found for {username}")
            raise LoginError(LoginErrorKind.INVALID_CREDENTIALS, params={'username': username})
        return entries[0][0]

    def login(self, username, password):
        if not username or not password:
            raise LoginError(LoginErrorKind.INVALID_CREDENTIALS, params={'username': username})

        if self.options.search_enable:
            dn = self._find_dn(username)
        else:
            dn = self.options.dnpattern.replace('%username%', escape_rdn(username))

        try:
            connection = self._bind(dn, password)
        except ConfigError as e:
            if e.params.get('refused'):
                raise LoginError(LoginErrorKind.INVALID_CREDENTIALS, params={'username': username}) from e
            raise LoginError(LoginErrorKind.DIRECTORY_UNAVAILABLE) from e

        try:
            if self.options.priv_read:
                connection.unbind()
                try:
                    connection = self._bind(self.options.priv_username, _secret(self.options.priv_password))
                except ConfigError as e:
                    raise LoginError(LoginErrorKind.DIRECTORY_UNAVAILABLE) from e
            return self._read_attributes(connection, dn)
        finally:
            connection.unbind()

    def _read_attributes(self, connection, dn):
        requested = self.options.attributes if self.options.attributes is not None else ldap3.ALL_ATTRIBUTES
        entries = search(connection, [dn], '(objectClass=*)', requested, scope=ldap3.BASE)
        if not entries:
            return {}
        raw = entries[0][1]
        return {name: values_of(raw, name) for name in raw}
