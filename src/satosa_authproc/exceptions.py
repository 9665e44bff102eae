"""
Error taxonomy for authentication flows.

Every error carries a closed kind (an Enum member) and a parameter record, and can be
written into an AuthState with to_dict() and rebuilt with error_from_dict() when the
flow resumes in another request.
"""
import dataclasses
import enum

from satosa.exception import SATOSAError


class StateErrorKind(enum.Enum):
    NOT_FOUND = 'NotFound'
    STAGE_MISMATCH = 'StageMismatch'
    EXPIRED = 'Expired'


class ProtocolErrorKind(enum.Enum):
    UNTRUSTED_ISSUER = 'UntrustedIssuer'
    MISSING_ISSUER = 'MissingIssuer'
    SIGNATURE_INVALID = 'SignatureInvalid'
    VERIFICATION_TIMEOUT = 'VerificationTimeout'
    NO_ASSERTION = 'NoAssertion'
    MULTIPLE_ASSERTIONS = 'MultipleAssertions'
    INVALID_AUDIENCE = 'InvalidAudience'
    ASSERTION_EXPIRED = 'AssertionExpired'
    UNSUPPORTED_BINDING = 'UnsupportedBinding'
    INVALID_MESSAGE = 'InvalidMessage'
    STATUS_FAILURE = 'StatusFailure'


class StatusCode(enum.Enum):
    REQUESTER = 'Requester'
    RESPONDER = 'Responder'
    VERSION_MISMATCH = 'VersionMismatch'
    AUTHN_FAILED = 'AuthnFailed'
    INVALID_ATTR_NAME_OR_VALUE = 'InvalidAttrNameOrValue'
    INVALID_NAMEID_POLICY = 'InvalidNameIDPolicy'
    NO_AUTHN_CONTEXT = 'NoAuthnContext'
    NO_AVAILABLE_IDP = 'NoAvailableIdP'
    NO_PASSIVE = 'NoPassive'
    NO_SUPPORTED_IDP = 'NoSupportedIdP'
    PARTIAL_LOGOUT = 'PartialLogout'
    PROXY_COUNT_EXCEEDED = 'ProxyCountExceeded'
    REQUEST_DENIED = 'RequestDenied'
    REQUEST_UNSUPPORTED = 'RequestUnsupported'
    REQUEST_VERSION_DEPRECATED = 'RequestVersionDeprecated'
    REQUEST_VERSION_TOO_HIGH = 'RequestVersionTooHigh'
    REQUEST_VERSION_TOO_LOW = 'RequestVersionTooLow'
    RESOURCE_NOT_RECOGNIZED = 'ResourceNotRecognized'
    TOO_MANY_RESPONSES = 'TooManyResponses'
    UNKNOWN_ATTR_PROFILE = 'UnknownAttrProfile'
    UNKNOWN_PRINCIPAL = 'UnknownPrincipal'
    UNSUPPORTED_BINDING = 'UnsupportedBinding'
    UNKNOWN_STATUS = 'UnknownStatus'


class LoginErrorKind(enum.Enum):
    INVALID_CREDENTIALS = 'InvalidCredentials'
    NO_PASSIVE = 'NoPassive'
    DIRECTORY_UNAVAILABLE = 'DirectoryUnavailable'


class ConfigErrorKind(enum.Enum):
    MISSING_AUTHSOURCE = 'MissingAuthsource'
    WRONG_AUTHSOURCE_TYPE = 'WrongAuthsourceType'
    UNBINDABLE = 'Unbindable'
    INVALID_CONFIG = 'InvalidConfig'


class FilterErrorKind(enum.Enum):
    FILTER_FAILED = 'FilterFailed'


LOGIN_ERROR_CATALOG = {
    LoginErrorKind.INVALID_CREDENTIALS:
        'Either no user with the given username could be found, or the password you gave was wrong.',
    LoginErrorKind.NO_PASSIVE:
        'Passive authentication was requested, but you are not logged in.',
    LoginErrorKind.DIRECTORY_UNAVAILABLE:
        'The user directory could not be reached. Please try again later.',
}


def login_error_message(kind):
    return LOGIN_ERROR_CATALOG[LoginErrorKind(kind)]


@dataclasses.dataclass(frozen=True)
class StatusParams:
    """Diagnostics an identity provider returned alongside a non-success status."""
    status: str
    sub_status: str = None
    message: str = None
    detail: dict = dataclasses.field(default_factory=dict)


class AuthProcError(SATOSAError):
    """Base class of every error raised while driving an authentication flow."""
    category = 'authproc'
    kind_type = None

    def __init__(self, kind, params=None, message=None):
        self.kind = self.kind_type(kind)
        self.params = dict(params or {})
        super().__init__(message or self.kind.value)

    @property
    def message(self):
        return self.args[0]

    def to_dict(self):
        return {
            'category': self.category,
            'kind': self.kind.value,
            'params': self.params,
            'message': self.message,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(data['kind'], params=data.get('params'), message=data.get('message'))


class StateError(AuthProcError):
    category = 'state'
    kind_type = StateErrorKind


class ProtocolError(AuthProcError):
    category = 'protocol'
    kind_type = ProtocolErrorKind


class StatusFailure(ProtocolError):
    """The identity provider answered with a status other than Success."""
    category = 'status'

    def __init__(self, code, params, message=None):
        self.code = StatusCode(code)
        self.status_params = params
        super().__init__(ProtocolErrorKind.STATUS_FAILURE, params=dataclasses.asdict(params),
                         message=message or f'{ProtocolErrorKind.STATUS_FAILURE.value}({self.code.value})')

    def to_dict(self):
        data = super().to_dict()
        data['code'] = self.code.value
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(data['code'], StatusParams(**data['params']), message=data.get('message'))


class LoginError(AuthProcError):
    """
    A recoverable login failure. Only the kind and the display parameters ever reach the
    end user; the message shown is looked up in LOGIN_ERROR_CATALOG.
    """
    category = 'login'
    kind_type = LoginErrorKind

    @property
    def display_message(self):
        return login_error_message(self.kind)


class ConfigError(AuthProcError):
    category = 'config'
    kind_type = ConfigErrorKind


class FilterError(AuthProcError):
    """A processing filter failed; `cause` is the error the filter raised."""
    category = 'filter'
    kind_type = FilterErrorKind

    def __init__(self, filter_name, index, cause, message=None):
        self.filter_name = filter_name
        self.index = index
        self.cause = cause
        params = {'filter': filter_name, 'index': index, 'cause': _cause_to_dict(cause)}
        super().__init__(FilterErrorKind.FILTER_FAILED, params=params,
                         message=message or f'Filter {filter_name} at position {index} failed')

    @classmethod
    def from_dict(cls, data):
        params = data['params']
        cause_data = params.get('cause')
        cause = error_from_dict(cause_data) if cause_data and cause_data['category'] in _CATEGORIES else None
        error = cls(params['filter'], params['index'], cause, message=data.get('message'))
        # an unhandled cause is not rebuilt, only its record survives
        error.params['cause'] = cause_data
        return error


def _cause_to_dict(cause):
    if cause is None:
        return None
    if isinstance(cause, AuthProcError):
        return cause.to_dict()
    return {'category': 'unhandled', 'kind': type(cause).__name__}


_CATEGORIES = {
    cls.category: cls
    for cls in (StateError, ProtocolError, StatusFailure, LoginError, ConfigError, FilterError)
}


def error_from_dict(data):
    try:
        cls = _CATEGORIES[data['category']]
    except KeyError:
        raise ValueError(f"Unknown error category {data.get('category')!r}")
    return cls.from_dict(data)
