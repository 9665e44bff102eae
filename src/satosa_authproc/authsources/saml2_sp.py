import copy
import dataclasses
import functools
import logging

from saml2 import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT
from saml2.client import Saml2Client
from saml2.config import SPConfig
from satosa.internal import AuthenticationInformation, InternalData
from satosa.saml_util import make_saml_response

from .. import definitions as d
from ..exceptions import ConfigError, ConfigErrorKind, ProtocolError, ProtocolErrorKind
from ..metadata import Saml2MetadataStore, StaticMetadata
from ..saml2_response import ResponseProcessor, decode_response
from .base import AuthSource

logger = logging.getLogger(__name__)


class SAML2SPSource(AuthSource):
    """
    Authentication at an external SAML2 identity provider.

    begin_auth() stores the state under the SP-sent stage and sends the browser to the
    IdP with the state token as RelayState. The assertion consumer service loads the state
    again by RelayState, validates the response and runs the processing filters.

    Configuration:
      sp_config: pysaml2 SP configuration used for the AuthnRequest
      entityid: entity id of this SP (defaults to sp_config.entityid)
      idp: entity id of the default IdP
      trusted_idps: IdPs allowed to answer (defaults to [idp])
      metadata: static metadata; without it the pysaml2 client's metadata is used
      verification_timeout: seconds allowed for signature verification
    """
    TYPE = 'saml2-sp'
    STAGE = d.STAGE_SP_SENT

    def __init__(self, source_id, config: dict, store, auth_callback_func, registry=None,
                 saml_client=None, metadata=None, processor=None):
        super().__init__(source_id, config, store, auth_callback_func, registry=registry)
        self._sp = saml_client
        self._metadata = metadata
        self.entity_id = config.get('entityid') or config.get('sp_config', {}).get('entityid')
        self.idp = config.get('idp')
        self.trusted_idps = list(config.get('trusted_idps') or ([self.idp] if self.idp else []))
        if not self.trusted_idps:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG,
                              message=f'Authsource {source_id} trusts no identity provider')
        self.processor = processor or ResponseProcessor(
            verification_timeout=config.get('verification_timeout', 10))
        logger.info(f"SAML2 SP {self.entity_id} active, trusting {self.trusted_idps}")

    @property
    def sp(self):
        if self._sp is None:
            sp_conf = SPConfig().load(copy.deepcopy(self.config['sp_config']))
            self._sp = Saml2Client(config=sp_conf)
        return self._sp

    @property
    def metadata(self):
        if self._metadata is None:
            if 'metadata' in self.config:
                self._metadata = StaticMetadata(self.config['metadata'])
            else:
                self._metadata = Saml2MetadataStore(self.sp.metadata)
        return self._metadata

    def begin_auth(self, context, state):
        state[d.SOURCE_ID] = self.source_id
        idp = state.get(d.IDP) or self.idp
        if idp is None:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG, message=f'No IdP to send {self.source_id} users to')

        token = self.store.save(state, self.STAGE)
        request_id, http_args = self.sp.prepare_for_authenticate(
            entityid=idp, relay_state=token, binding=BINDING_HTTP_REDIRECT)
        logger.info(f"{self.source_id}: sent AuthnRequest {request_id} to {idp}")
        return make_saml_response(BINDING_HTTP_REDIRECT, http_args)

    def handle_response(self, context, binding):
        received = decode_response(binding, context.request or {})
        if not received.relay_state:
            raise ProtocolError(ProtocolErrorKind.INVALID_MESSAGE,
                                message='Missing RelayState in message delivered to the assertion consumer service')
        state = self.store.load(received.relay_state, self.STAGE)

        try:
            assertion = self.processor.process(received, self.metadata, self.entity_id, self.trusted_idps)
        except ProtocolError as e:
            logger.info(f"{self.source_id}: response rejected with {e.kind.value}")
            return self.store.throw_exception(state, e)

        return self.on_assertion(context, state, assertion)

    def on_assertion(self, context, state, assertion):
        name_id = assertion.name_id
        state[d.LOGOUT_STATE] = {
            'idp': assertion.issuer,
            'name_id': dataclasses.asdict(name_id) if name_id is not None else None,
            'session_index': assertion.session_index,
        }
        state[d.IDP] = assertion.issuer

        state.data = InternalData(
            subject_id=name_id.value if name_id is not None else None,
            subject_type=name_id.format if name_id is not None else None,
            attributes={name: list(values) for name, values in assertion.attributes.items()},
            auth_info=AuthenticationInformation(
                auth_class_ref=assertion.authn_context_class_ref,
                timestamp=assertion.authn_instant,
                issuer=assertion.issuer,
            ),
        )
        logger.info(f"{self.source_id}: assertion from {assertion.issuer} accepted")
        return self.authenticated(context, state)

    def register_endpoints(self):
        return [
            ("^{}/acs/post$".format(self.source_id), functools.partial(self.handle_response, binding=BINDING_HTTP_POST)),
            ("^{}/acs/redirect$".format(self.source_id),
             functools.partial(self.handle_response, binding=BINDING_HTTP_REDIRECT)),
        ]
