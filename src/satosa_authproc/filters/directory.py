import logging
from typing import List, Optional

from ldap3.core.exceptions import LDAPException
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from ..authsources.ldap import LdapUserPassSource, connection_layer
from ..config import LayeredConfig
from ..directory import ServerConfig, bind_first, normalize_servers, resolve_servers
from ..exceptions import ConfigError, ConfigErrorKind
from ..pipeline import ProcessingFilter

logger = logging.getLogger(__name__)


class DirectoryFilterConfig(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    authsource: Optional[str] = None
    servers: List[ServerConfig] = Field(alias='ldap.servers', min_length=1)
    debug: bool = Field(False, alias='ldap.debug')
    timeout: float = Field(0, alias='ldap.timeout')
    base_dn: List[str] = Field(alias='ldap.basedn', min_length=1)
    username: Optional[str] = Field(None, alias='ldap.username')
    password: Optional[SecretStr] = Field(None, alias='ldap.password')
    product: str = Field('', alias='ldap.product')

    attribute_dn: str = Field('distinguishedName', alias='attribute.dn')
    attribute_groups: str = Field('groups', alias='attribute.groups')
    attribute_member: str = Field('member', alias='attribute.member')
    attribute_memberof: str = Field('memberOf', alias='attribute.memberof')
    attribute_groupname: str = Field('name', alias='attribute.groupname')
    attribute_type: str = Field('objectClass', alias='attribute.type')
    attribute_username: str = Field('sAMAccountName', alias='attribute.username')

    type_group: str = Field('group', alias='type.group')
    type_user: str = Field('user', alias='type.user')

    @field_validator('servers', mode='before')
    @classmethod
    def _servers(cls, value):
        return normalize_servers(value)

    @field_validator('base_dn', mode='before')
    @classmethod
    def _base_dn(cls, value):
        return [value] if isinstance(value, str) else value

    @field_validator('product')
    @classmethod
    def _product(cls, value):
        return value.strip().upper()


class DirectoryFilter(ProcessingFilter):
    """
    Base class for filters that look things up in an LDAP directory.

    Connection options may be inherited from an ldap authsource named by `authsource`;
    options given to the filter itself take precedence. The connection is opened on the
    first call to get_connection() and released when process() returns or fails.
    Subclasses implement lookup().
    """
    def __init__(self, config: dict, name=None, registry=None, connection_factory=None):
        super().__init__(config, name=name, registry=registry)
        self.title = f'ldap:{type(self).__name__} : '
        logger.debug(f"{self.title}Creating and configuring the filter.")

        layers = LayeredConfig()
        authsource = self.config.get('authsource')
        if authsource:
            logger.debug(f"{self.title}Attempting to get configuration values from authsource [{authsource}]")
            if registry is None:
                raise ConfigError(ConfigErrorKind.MISSING_AUTHSOURCE, params={'authsource': authsource},
                                  message=f'{self.title}No authsources available to resolve [{authsource}]')
            source_config = registry.get_config(authsource, expected_type=LdapUserPassSource.TYPE)
            layers.add_layer(f'authsource:{authsource}', connection_layer(source_config))
        layers.add_layer('filter', self.config)
        self.options = layers.validate(DirectoryFilterConfig)

        options = self.options
        logger.debug(f"{self.title}Configuration values retrieved; BaseDN: {options.base_dn} "
                     f"[{layers.origin('ldap.basedn')}] Product: {options.product}")

        self.attribute_map = {
            'dn': options.attribute_dn,
            'groups': options.attribute_groups,
            'member': options.attribute_member,
            'memberof': options.attribute_memberof,
            'name': options.attribute_groupname,
            'type': options.attribute_type,
            'username': options.attribute_username,
        }
        logger.debug(f"{self.title}Attribute map created: {self.attribute_map}")

        self.type_map = {
            'group': options.type_group,
            'user': options.type_user,
        }
        logger.debug(f"{self.title}Type map created: {self.type_map}")

        self.connection_factory = connection_factory
        self._connection = None

    @property
    def base_dn(self):
        return self.options.base_dn

    @property
    def product(self):
        return self.options.product

    def servers(self):
        options = self.options
        return resolve_servers(options.servers, timeout=options.timeout, debug=options.debug,
                               username=options.username, password=options.password)

    def get_connection(self):
        if self._connection is None:
            self._connection = bind_first(self.servers(), self.connection_factory, title=self.title)
        return self._connection

    def release(self):
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as e:
            logger.warning(f"{self.title}unbind failed: {type(e).__name__}")

    def process(self, context, data):
        try:
            return self.lookup(context, data)
        finally:
            self.release()

    def lookup(self, context, data):
        raise NotImplementedError
