"""
Validation of SAML2 authentication responses and extraction of the assertion they carry.

ResponseProcessor.process() is a pure function of the received message and the metadata
lookup it is given: it either returns an immutable Assertion or raises a ProtocolError.
"""
import base64
import calendar
import concurrent.futures
import dataclasses
import logging
import tempfile
import time
import zlib
from types import MappingProxyType

from saml2 import BINDING_HTTP_POST, BINDING_HTTP_REDIRECT, SAMLError, samlp
from saml2.s_utils import decode_base64_and_inflate
from saml2.sigver import CryptoBackendXmlSec1, SecurityContext, SigverError, get_xmlsec_binary
from saml2.time_util import str_to_time

from . import definitions as d
from .exceptions import ProtocolError, ProtocolErrorKind, StatusCode, StatusFailure, StatusParams

logger = logging.getLogger(__name__)

TOP_LEVEL_STATUS_CODES = {
    samlp.STATUS_REQUESTER: StatusCode.REQUESTER,
    samlp.STATUS_RESPONDER: StatusCode.RESPONDER,
    samlp.STATUS_VERSION_MISMATCH: StatusCode.VERSION_MISMATCH,
}

SUB_STATUS_CODES = {
    samlp.STATUS_AUTHN_FAILED: StatusCode.AUTHN_FAILED,
    samlp.STATUS_INVALID_ATTR_NAME_OR_VALUE: StatusCode.INVALID_ATTR_NAME_OR_VALUE,
    samlp.STATUS_INVALID_NAMEID_POLICY: StatusCode.INVALID_NAMEID_POLICY,
    samlp.STATUS_NO_AUTHN_CONTEXT: StatusCode.NO_AUTHN_CONTEXT,
    samlp.STATUS_NO_AVAILABLE_IDP: StatusCode.NO_AVAILABLE_IDP,
    samlp.STATUS_NO_PASSIVE: StatusCode.NO_PASSIVE,
    samlp.STATUS_NO_SUPPORTED_IDP: StatusCode.NO_SUPPORTED_IDP,
    samlp.STATUS_PARTIAL_LOGOUT: StatusCode.PARTIAL_LOGOUT,
    samlp.STATUS_PROXY_COUNT_EXCEEDED: StatusCode.PROXY_COUNT_EXCEEDED,
    samlp.STATUS_REQUEST_DENIED: StatusCode.REQUEST_DENIED,
    samlp.STATUS_REQUEST_UNSUPPORTED: StatusCode.REQUEST_UNSUPPORTED,
    samlp.STATUS_REQUEST_VERSION_DEPRECATED: StatusCode.REQUEST_VERSION_DEPRECATED,
    samlp.STATUS_REQUEST_VERSION_TOO_HIGH: StatusCode.REQUEST_VERSION_TOO_HIGH,
    samlp.STATUS_REQUEST_VERSION_TOO_LOW: StatusCode.REQUEST_VERSION_TOO_LOW,
    samlp.STATUS_RESOURCE_NOT_RECOGNIZED: StatusCode.RESOURCE_NOT_RECOGNIZED,
    samlp.STATUS_TOO_MANY_RESPONSES: StatusCode.TOO_MANY_RESPONSES,
    samlp.STATUS_UNKNOWN_ATTR_PROFILE: StatusCode.UNKNOWN_ATTR_PROFILE,
    samlp.STATUS_UNKNOWN_PRINCIPAL: StatusCode.UNKNOWN_PRINCIPAL,
    samlp.STATUS_UNSUPPORTED_BINDING: StatusCode.UNSUPPORTED_BINDING,
}

DEFAULT_VERIFICATION_TIMEOUT = 10
DEFAULT_CLOCK_SKEW = 180


@dataclasses.dataclass(frozen=True)
class NameIdentifier:
    value: str
    format: str = None
    name_qualifier: str = None
    sp_name_qualifier: str = None


@dataclasses.dataclass(frozen=True)
class Assertion:
    issuer: str
    name_id: NameIdentifier
    session_index: str
    attributes: MappingProxyType
    status: str = samlp.STATUS_SUCCESS
    authn_instant: str = None
    authn_context_class_ref: str = None


@dataclasses.dataclass(frozen=True)
class ReceivedResponse:
    xml: str
    message: samlp.Response
    binding: str
    relay_state: str = None


def decode_response(binding, params):
    """
    Undo the transport encoding of the given binding and parse the SAMLResponse parameter.

    :type binding: str
    :type params: dict[str, str]
    :rtype: ReceivedResponse
    """
    if binding not in (BINDING_HTTP_POST, BINDING_HTTP_REDIRECT):
        raise ProtocolError(ProtocolErrorKind.UNSUPPORTED_BINDING, params={'binding': binding},
                            message=f'Binding {binding} is not supported for responses')
    encoded = params.get('SAMLResponse')
    if not encoded:
        raise ProtocolError(ProtocolErrorKind.INVALID_MESSAGE, message='Missing SAMLResponse parameter')

    try:
        if binding == BINDING_HTTP_REDIRECT:
            xml = decode_base64_and_inflate(encoded)
        else:
            xml = base64.b64decode(encoded)
        if isinstance(xml, bytes):
            xml = xml.decode('utf-8')
        message = samlp.response_from_string(xml)
    except (ValueError, SyntaxError, zlib.error, SAMLError) as e:
        raise ProtocolError(ProtocolErrorKind.INVALID_MESSAGE, message='SAMLResponse could not be decoded') from e
    if message is None:
        raise ProtocolError(ProtocolErrorKind.INVALID_MESSAGE, message='SAMLResponse is not a samlp:Response')

    logger.debug(f"decoded {binding} response {message.id}")
    return ReceivedResponse(xml=xml, message=message, binding=binding, relay_state=params.get(d.RELAY_STATE_PARAM))


def response_issuer(message):
    if message.issuer is None or not message.issuer.text:
        return None
    return message.issuer.text.strip()


class SignatureVerifier(object):
    """ Checks the XML signature of one node of a message against a set of certificates """

    def verify(self, xml, node_name, node_id, certificates):
        raise NotImplementedError


class Saml2SignatureVerifier(SignatureVerifier):
    """ Verifies with pysaml2's SecurityContext (xmlsec1) """

    def __init__(self, security_context=None):
        self._security_context = security_context

    @property
    def security_context(self):
        if self._security_context is None:
            self._security_context = SecurityContext(CryptoBackendXmlSec1(get_xmlsec_binary()))
        return self._security_context

    def verify(self, xml, node_name, node_id, certificates):
        for certificate in certificates:
            with tempfile.NamedTemporaryFile('w', suffix='.pem') as cert_file:
                cert_file.write(_pem(certificate))
                cert_file.flush()
                try:
                    self.security_context.verify_signature(xml, cert_file=cert_file.name, cert_type='pem',
                                                           node_name=node_name, node_id=node_id)
                except SigverError:
                    continue
            return True
        return False


def _pem(certificate):
    if '-----BEGIN' in certificate:
        return certificate
    body = ''.join(certificate.split())
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return '\n'.join(['-----BEGIN CERTIFICATE-----'] + lines + ['-----END CERTIFICATE-----', ''])


def _node_name(node):
    return f'{node.c_namespace}:{node.c_tag}'


def _timestamp(value, attribute):
    if not value:
        return None
    try:
        return calendar.timegm(str_to_time(value))
    except (AttributeError, ValueError) as e:
        raise ProtocolError(ProtocolErrorKind.INVALID_MESSAGE, params={'attribute': attribute},
                            message=f'Malformed {attribute} timestamp') from e


class ResponseProcessor(object):
    """
    Turns a received samlp:Response into an Assertion.

    Checks, in order: the issuer is present and allow-listed, the status is Success, there
    is exactly one assertion, the response or the assertion is signed by a key listed in
    the issuer's metadata, and the assertion conditions hold.
    """
    def __init__(self, verifier=None, verification_timeout=DEFAULT_VERIFICATION_TIMEOUT,
                 clock_skew=DEFAULT_CLOCK_SKEW, clock=time.time):
        self.verifier = verifier if verifier is not None else Saml2SignatureVerifier()
        self.verification_timeout = verification_timeout
        self.clock_skew = clock_skew
        self.clock = clock

    def process(self, received, metadata, sp_entity_id, trusted_idps):
        """
        :type received: ReceivedResponse
        :type metadata: satosa_authproc.metadata.MetadataLookup
        :type sp_entity_id: str
        :type trusted_idps: collections.abc.Container[str]
        :rtype: Assertion
        """
        message = received.message

        issuer = response_issuer(message)
        if issuer is None:
            raise ProtocolError(ProtocolErrorKind.MISSING_ISSUER, message='Response has no Issuer')
        if issuer not in trusted_idps:
            raise ProtocolError(ProtocolErrorKind.UNTRUSTED_ISSUER, params={'issuer': issuer},
                                message=f'Issuer {issuer} is not trusted by this service provider')
        idp_metadata = metadata.get(issuer, d.METADATA_IDP_REMOTE)
        if idp_metadata is None:
            raise ProtocolError(ProtocolErrorKind.UNTRUSTED_ISSUER, params={'issuer': issuer},
                                message=f'No metadata for issuer {issuer}')

        self._check_status(message)

        if not message.assertion:
            raise ProtocolError(ProtocolErrorKind.NO_ASSERTION, message='Response carries no assertion')
        if len(message.assertion) > 1:
            raise ProtocolError(ProtocolErrorKind.MULTIPLE_ASSERTIONS,
                                message=f'Response carries {len(message.assertion)} assertions')
        assertion = message.assertion[0]

        self._check_signatures(received.xml, message, assertion, idp_metadata)

        if assertion.issuer is not None and assertion.issuer.text and assertion.issuer.text.strip() != issuer:
            raise ProtocolError(ProtocolErrorKind.UNTRUSTED_ISSUER, params={'issuer': assertion.issuer.text},
                                message='Assertion issuer differs from response issuer')
        self._check_conditions(assertion, sp_entity_id)

        result = self._extract(issuer, assertion)
        logger.info(f"accepted assertion from {issuer} with {len(result.attributes)} attributes")
        return result

    def _check_status(self, message):
        status_code = message.status.status_code if message.status is not None else None
        if status_code is None:
            raise ProtocolError(ProtocolErrorKind.INVALID_MESSAGE, message='Response has no status')
        if status_code.value == samlp.STATUS_SUCCESS:
            return

        sub_status = status_code.status_code.value if status_code.status_code is not None else None
        if sub_status is not None:
            code = SUB_STATUS_CODES.get(sub_status, StatusCode.UNKNOWN_STATUS)
        else:
            code = TOP_LEVEL_STATUS_CODES.get(status_code.value, StatusCode.UNKNOWN_STATUS)

        status_message = message.status.status_message
        detail = {}
        if message.status.status_detail is not None:
            for element in message.status.status_detail.extension_elements:
                detail[element.tag] = element.text
        params = StatusParams(
            status=status_code.value,
            sub_status=sub_status,
            message=status_message.text if status_message is not None else None,
            detail=detail,
        )
        logger.info(f"identity provider returned status {status_code.value} / {sub_status}")
        raise StatusFailure(code, params)

    def _check_signatures(self, xml, message, assertion, idp_metadata):
        signed_nodes = [node for node in (message, assertion) if node.signature is not None]
        if not signed_nodes:
            raise ProtocolError(ProtocolErrorKind.SIGNATURE_INVALID, message='Neither response nor assertion is signed')
        if not idp_metadata.signing_certificates:
            raise ProtocolError(ProtocolErrorKind.SIGNATURE_INVALID,
                                message=f'No signing keys registered for {idp_metadata.entity_id}')

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            for node in signed_nodes:
                future = executor.submit(self.verifier.verify, xml, _node_name(node), node.id,
                                         idp_metadata.signing_certificates)
                try:
                    valid = future.result(timeout=self.verification_timeout)
                except concurrent.futures.TimeoutError as e:
                    raise ProtocolError(ProtocolErrorKind.VERIFICATION_TIMEOUT,
                                        message='Signature verification timed out') from e
                if not valid:
                    raise ProtocolError(ProtocolErrorKind.SIGNATURE_INVALID,
                                        message=f'Invalid signature on {node.c_tag}')
        finally:
            executor.shutdown(wait=False)

    def _check_conditions(self, assertion, sp_entity_id):
        conditions = assertion.conditions
        if conditions is None:
            return

        now = self.clock()
        not_before = _timestamp(conditions.not_before, 'NotBefore')
        not_on_or_after = _timestamp(conditions.not_on_or_after, 'NotOnOrAfter')
        if not_before is not None and not_before > now + self.clock_skew:
            raise ProtocolError(ProtocolErrorKind.ASSERTION_EXPIRED, message='Assertion is not yet valid')
        if not_on_or_after is not None and not_on_or_after <= now - self.clock_skew:
            raise ProtocolError(ProtocolErrorKind.ASSERTION_EXPIRED, message='Assertion has expired')

        for restriction in conditions.audience_restriction:
            audiences = [audience.text.strip() for audience in restriction.audience if audience.text]
            if sp_entity_id not in audiences:
                raise ProtocolError(ProtocolErrorKind.INVALID_AUDIENCE, params={'audiences': audiences},
                                    message=f'Assertion is not intended for {sp_entity_id}')

    def _extract(self, issuer, assertion):
        name_id = None
        if assertion.subject is not None and assertion.subject.name_id is not None:
            nid = assertion.subject.name_id
            name_id = NameIdentifier(
                value=nid.text.strip() if nid.text else nid.text,
                format=nid.format,
                name_qualifier=nid.name_qualifier,
                sp_name_qualifier=nid.sp_name_qualifier,
            )

        session_index = None
        authn_instant = None
        class_ref = None
        if assertion.authn_statement:
            statement = assertion.authn_statement[0]
            session_index = statement.session_index
            authn_instant = statement.authn_instant
            if statement.authn_context is not None and statement.authn_context.authn_context_class_ref is not None:
                class_ref = statement.authn_context.authn_context_class_ref.text

        attributes = {}
        for statement in assertion.attribute_statement:
            for attribute in statement.attribute:
                values = attributes.setdefault(attribute.name, [])
                values.extend('' if value.text is None else value.text for value in attribute.attribute_value)

        return Assertion(
            issuer=issuer,
            name_id=name_id,
            session_index=session_index,
            attributes=MappingProxyType({name: tuple(values) for name, values in attributes.items()}),
            authn_instant=authn_instant,
            authn_context_class_ref=class_ref,
        )
