import logging

from .. import definitions as d
from ..config import load_yaml
from ..exceptions import ConfigError, ConfigErrorKind, StateError, StateErrorKind
from .ldap import LdapUserPassSource
from .saml2_sp import SAML2SPSource
from .userpass import StaticUserPassSource

logger = logging.getLogger(__name__)

SOURCE_TYPES = {cls.TYPE: cls for cls in (StaticUserPassSource, LdapUserPassSource, SAML2SPSource)}


class AuthSourceRegistry(object):
    """
    The configured authentication sources, by id:

        corp-ldap:
          type: ldap
          servers: [ldap://ldap1.example.org, ldap://ldap2.example.org]
          ...

    Sources are created on first use. The registry also owns the endpoint that resumes a
    suspended pipeline, since only the state tells which source it belongs to.
    """
    endpoint = 'authproc/resume'

    def __init__(self, sources_config: dict, store, auth_callback_func, source_types=None):
        self.sources_config = sources_config or {}
        self.store = store
        self.auth_callback_func = auth_callback_func
        self.source_types = source_types or SOURCE_TYPES
        self.sources = {}

    @classmethod
    def from_yaml(cls, path, store, auth_callback_func, **kwargs):
        return cls(load_yaml(path), store, auth_callback_func, **kwargs)

    def get_config(self, source_id, expected_type=None):
        if source_id not in self.sources_config:
            raise ConfigError(ConfigErrorKind.MISSING_AUTHSOURCE, params={'authsource': source_id},
                              message=f'Authsource [{source_id}] not found')
        config = self.sources_config[source_id]
        if expected_type is not None and config.get('type') != expected_type:
            raise ConfigError(ConfigErrorKind.WRONG_AUTHSOURCE_TYPE,
                              params={'authsource': source_id, 'expected': expected_type},
                              message=f'Authsource [{source_id}] is not of type {expected_type}')
        return config

    def register(self, source):
        self.sources[source.source_id] = source
        return source

    def get(self, source_id):
        if source_id in self.sources:
            return self.sources[source_id]
        config = self.get_config(source_id)
        try:
            cls = self.source_types[config.get('type')]
        except KeyError:
            raise ConfigError(ConfigErrorKind.WRONG_AUTHSOURCE_TYPE, params={'authsource': source_id},
                              message=f"Authsource [{source_id}] has unknown type {config.get('type')}")
        logger.info(f"creating authsource {source_id} of type {cls.TYPE}")
        return self.register(cls(source_id, config, self.store, self.auth_callback_func, registry=self))

    def resume_pipeline(self, context):
        token = (context.request or {}).get(d.STATE_PARAM)
        if not token:
            raise StateError(StateErrorKind.NOT_FOUND, message='Missing AuthState parameter')
        state = self.store.load(token, d.STAGE_PIPELINE)
        source = self.get(state.source_id)
        return source.pipeline.resume(context, state)

    def register_endpoints(self):
        url_map = [("^{}$".format(self.endpoint), self.resume_pipeline)]
        for source_id in self.sources_config:
            url_map.extend(self.get(source_id).register_endpoints())
        return url_map
