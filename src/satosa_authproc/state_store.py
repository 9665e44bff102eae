import copy
import importlib
import logging
import secrets
import time
from urllib.parse import urlencode

import redis
import satosa.response
from cryptography.fernet import Fernet, InvalidToken
from satosa.internal import InternalData

from . import definitions as d
from .exceptions import AuthProcError, StateError, StateErrorKind, error_from_dict
from .serializable_state import SerializableState

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME = 3600
EXPIRY_GRACE = 300


class AuthState(dict):
    """
    Everything an authentication flow needs to resume in a later request.
    Values must be JSON serializable.
    """

    @property
    def id(self):
        return self.get(d.STATE_KEY)

    @property
    def source_id(self):
        return self.get(d.SOURCE_ID)

    @property
    def cursor(self):
        return self.get(d.CURSOR, 0)

    @cursor.setter
    def cursor(self, value):
        self[d.CURSOR] = value

    @property
    def forced_username(self):
        return self.get(d.FORCED_USERNAME)

    @property
    def remember_me(self):
        return bool(self.get(d.REMEMBER_ME, False))

    @property
    def logout_state(self):
        return self.get(d.LOGOUT_STATE)

    @property
    def data(self):
        if d.DATA not in self:
            return InternalData()
        return InternalData.from_dict(self[d.DATA])

    @data.setter
    def data(self, internal_data):
        self[d.DATA] = internal_data.to_dict()

    @property
    def error(self):
        if d.EXCEPTION_DATA not in self:
            return None
        return error_from_dict(self[d.EXCEPTION_DATA])


def load_handler(path):
    """ Resolve a 'package.module:function' exception handler path """
    module_name, _, func_name = path.partition(':')
    module = importlib.import_module(module_name)
    return getattr(module, func_name)


class StateStore(object):
    """
    Persist AuthState between requests in redis, encrypted, under an unguessable token.
    Every save is tagged with a stage; loading under another stage is refused.
    """
    KEY_PREFIX = 'authproc:state:'

    def __init__(self, db_encryption_key, redishost='localhost', redisport=6379, lifetime=DEFAULT_LIFETIME,
                 redis_client=None, clock=time.time):
        self.fernet = Fernet(db_encryption_key)
        self.redis = redis_client if redis_client is not None else redis.Redis(host=redishost, port=redisport)
        self.lifetime = lifetime
        self.clock = clock

    @classmethod
    def from_config(cls, config: dict, **kwargs):
        return cls(config['db_encryption_key'],
                   redishost=config.get('redis_host', 'localhost'),
                   redisport=config.get('redis_port', 6379),
                   lifetime=config.get('state_lifetime', DEFAULT_LIFETIME),
                   **kwargs)

    def _key(self, token):
        return f'{self.KEY_PREFIX}{token}'

    def save(self, state, stage):
        token = secrets.token_urlsafe(32)
        state[d.STATE_KEY] = token
        serializable = SerializableState(state, stage, self.clock() + self.lifetime)
        blob = self.fernet.encrypt(serializable.json_dumps().encode('utf-8'))
        self.redis.set(self._key(token), blob, ex=self.lifetime + EXPIRY_GRACE)
        logger.info(f"stored state for stage {stage}")
        return token

    def load(self, token, expected_stage):
        if not token:
            raise StateError(StateErrorKind.NOT_FOUND, message='No state token given')
        blob = self.redis.get(self._key(token))
        if blob is None:
            raise StateError(StateErrorKind.NOT_FOUND, message='Unknown or expired state token')
        try:
            serializable = SerializableState.json_loads(self.fernet.decrypt(blob).decode('utf-8'))
        except InvalidToken as e:
            raise StateError(StateErrorKind.NOT_FOUND, message='State could not be decrypted') from e

        if serializable.expires() < self.clock():
            raise StateError(StateErrorKind.EXPIRED, message='State has expired')
        if serializable.stage() != expected_stage:
            logger.warning(f"state stage mismatch: expected {expected_stage}, found {serializable.stage()}")
            raise StateError(StateErrorKind.STAGE_MISMATCH, params={'expected': expected_stage},
                             message=f'State was not saved for stage {expected_stage}')
        logger.info(f"loaded state for stage {expected_stage}")
        return AuthState(serializable.state())

    def delete(self, token):
        if token:
            self.redis.delete(self._key(token))

    def clone(self, state, stage=None):
        """
        Deep copy of `state` without its token. With `stage`, the copy is saved at once and
        carries a fresh token of its own.
        """
        cloned = AuthState(copy.deepcopy(dict(state)))
        cloned.pop(d.STATE_KEY, None)
        if stage is not None:
            self.save(cloned, stage)
        return cloned

    def throw_exception(self, state, error):
        """
        Record `error` in the state and resume at the exception continuation the state was
        created with: a redirect to the handler URL, a call to the handler function, or,
        without either, raise the error to the caller.
        """
        state[d.EXCEPTION_DATA] = error.to_dict()

        if d.EXCEPTION_HANDLER_URL in state:
            token = self.save(state, d.STAGE_EXCEPTION)
            url = state[d.EXCEPTION_HANDLER_URL]
            separator = '&' if '?' in url else '?'
            logger.info(f"redirecting {error.category} error {error.kind.value} to exception handler")
            return satosa.response.Redirect(url + separator + urlencode({d.EXCEPTION_PARAM: token}))

        if d.EXCEPTION_HANDLER_FUNC in state:
            handler = load_handler(state[d.EXCEPTION_HANDLER_FUNC])
            logger.info(f"calling exception handler {state[d.EXCEPTION_HANDLER_FUNC]}")
            return handler(state, error)

        raise error

    def load_exception(self, token):
        state = self.load(token, d.STAGE_EXCEPTION)
        error = state.error
        if not isinstance(error, AuthProcError):
            raise StateError(StateErrorKind.NOT_FOUND, message='State carries no exception')
        return state, error
