"""
LDAP connection handling shared by the ldap authsource and the directory filters.

Connections are opened on demand, bound against the first server in the list that
accepts the credentials, and never pooled.
"""
import dataclasses
import logging
from typing import Optional

import ldap3
from ldap3.core.exceptions import LDAPException
from ldap3.utils.log import BASIC, OFF, set_library_log_detail_level
from pydantic import BaseModel, ConfigDict, SecretStr

from .exceptions import ConfigError, ConfigErrorKind

logger = logging.getLogger(__name__)


class ServerConfig(BaseModel):
    """ One entry of a server list; unset options fall back to the list-wide value """
    model_config = ConfigDict(extra='ignore')

    uri: str
    enable_tls: bool = False
    port: Optional[int] = None
    timeout: Optional[float] = None
    debug: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None


def normalize_servers(value):
    """ Accept 'ldap://a ldap://b', ['ldap://a', {'uri': 'ldap://b'}] or a single mapping """
    if isinstance(value, str):
        return [{'uri': uri} for uri in value.split()]
    if isinstance(value, dict):
        return [value]
    return [{'uri': server} if isinstance(server, str) else server for server in value or []]


@dataclasses.dataclass(frozen=True)
class ServerSettings:
    uri: str
    enable_tls: bool = False
    port: int = None
    timeout: float = 0
    debug: bool = False
    username: str = None
    password: str = dataclasses.field(default=None, repr=False)


def resolve_servers(servers, timeout=0, debug=False, username=None, password=None):
    """
    Effective connection settings per server: a per-server option wins when it is set,
    otherwise the list-wide default applies.
    """
    resolved = []
    for server in servers:
        server_password = server.password if server.password is not None else password
        if isinstance(server_password, SecretStr):
            server_password = server_password.get_secret_value()
        resolved.append(ServerSettings(
            uri=server.uri,
            enable_tls=server.enable_tls,
            port=server.port,
            timeout=server.timeout if server.timeout is not None else timeout,
            debug=server.debug if server.debug is not None else debug,
            username=server.username if server.username is not None else username,
            password=server_password,
        ))
    return resolved


def mask(secret):
    return '*' * len(secret or '')


def open_connection(settings):
    timeout = settings.timeout or None
    server = ldap3.Server(settings.uri, port=settings.port, get_info=ldap3.NONE, connect_timeout=timeout)
    return ldap3.Connection(server, user=settings.username, password=settings.password,
                            receive_timeout=timeout, raise_exceptions=False)


def bind_first(servers, connection_factory=None, title=''):
    """
    Return a bound connection to the first server accepting the bind.

    Raises ConfigError(Unbindable) when no server binds; its `refused` parameter counts
    the servers that answered but rejected the credentials.
    """
    connection_factory = connection_factory or open_connection
    refused = 0
    for settings in servers:
        set_library_log_detail_level(BASIC if settings.debug else OFF)
        logger.debug(
            f"{title}Connecting to LDAP server; Hostname: {settings.uri}"
            f" Enable TLS: {'Yes' if settings.enable_tls else 'No'}"
            f" Debug: {'Yes' if settings.debug else 'No'}"
            f" Timeout: {settings.timeout}"
            f" Username: {settings.username}"
            f" Password: {mask(settings.password)}"
        )
        try:
            connection = connection_factory(settings)
            if settings.enable_tls:
                connection.open()
                connection.start_tls()
            if connection.bind():
                logger.info(f"{title}bound to {settings.uri}")
                return connection
            refused += 1
            logger.warning(f"{title}bind to {settings.uri} was refused")
            connection.unbind()
        except LDAPException as e:
            logger.warning(f"{title}LDAP server {settings.uri} unavailable: {type(e).__name__}")

    raise ConfigError(ConfigErrorKind.UNBINDABLE,
                      params={'servers': [settings.uri for settings in servers], 'refused': refused},
                      message=f'{title}No LDAP server could be bound')


def values_of(attributes, name):
    """ Attribute values as a list of strings, whatever shape ldap3 returned them in """
    value = attributes.get(name)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [item.decode('utf-8') if isinstance(item, bytes) else str(item) for item in value]


def search(connection, base_dns, search_filter, attributes, scope=ldap3.SUBTREE):
    """ Search every base DN and return (dn, attributes) pairs """
    entries = []
    for base_dn in base_dns:
        connection.search(base_dn, search_filter, search_scope=scope, attributes=attributes)
        for entry in connection.response or []:
            if entry.get('type') == 'searchResEntry':
                entries.append((entry['dn'], entry.get('attributes', {})))
    logger.debug(f"search {search_filter} returned {len(entries)} entries")
    return entries
