import dataclasses
import datetime
import hmac
import json
import logging
from urllib.parse import urlencode

import satosa.response
from satosa.internal import AuthenticationInformation, InternalData

from .. import definitions as d
from ..exceptions import LoginError, LoginErrorKind, StateError, StateErrorKind
from ..transport import RequestTransport
from .base import AuthSource

logger = logging.getLogger(__name__)

PASSWORD_PROTECTED_TRANSPORT = 'urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport'
REMEMBER_USERNAME_MAX_AGE = 31536000


@dataclasses.dataclass
class LoginPrompt:
    """ Everything the login form needs to be (re)displayed """
    state_token: str
    username: str = ''
    force_username: bool = False
    remember_username_enabled: bool = False
    remember_username_checked: bool = False
    remember_me_enabled: bool = False
    remember_me_checked: bool = False
    error_code: str = None
    error_message: str = None
    error_params: dict = None
    links: list = dataclasses.field(default_factory=list)


def render_json(prompt):
    return satosa.response.Response(json.dumps(dataclasses.asdict(prompt)), content='application/json')


class UserPassSource(AuthSource):
    """
    Username/password authentication. Subclasses implement login(), which returns the
    user's attributes or raises LoginError.

    Configuration:
      login_url: page showing the login form; receives the AuthState parameter
      remember.username.enabled / remember.username.checked
      remember.me.enabled / remember.me.checked
      login_links: extra links shown below the form
    """
    STAGE = d.STAGE_USERPASS

    def __init__(self, source_id, config: dict, store, auth_callback_func, registry=None, login_renderer=None):
        super().__init__(source_id, config, store, auth_callback_func, registry=registry)
        self.login_url = config.get('login_url')
        self.remember_username_enabled = config.get('remember.username.enabled', False)
        self.remember_username_checked = config.get('remember.username.checked', False)
        self.remember_me_enabled = config.get('remember.me.enabled', False)
        self.remember_me_checked = config.get('remember.me.checked', False)
        self.login_links = config.get('login_links', [])
        self.login_renderer = login_renderer or render_json
        self.endpoint = f'{source_id}/login'

    @property
    def username_cookie(self):
        return f'{self.source_id}-username'

    def begin_auth(self, context, state):
        state[d.SOURCE_ID] = self.source_id
        token = self.store.save(state, self.STAGE)
        separator = '&' if '?' in self.login_url else '?'
        logger.info(f"{self.source_id}: redirecting to login form")
        return satosa.response.Redirect(self.login_url + separator + urlencode({d.STATE_PARAM: token}))

    def login(self, username, password):
        raise NotImplementedError

    def handle_login(self, context, token, username, password):
        state = self.store.load(token, self.STAGE)
        if state.forced_username:
            username = state.forced_username

        attributes = self.login(username, password)
        logger.info(f"{self.source_id}: user {username} logged in")

        state.data = InternalData(
            subject_id=username,
            attributes=attributes,
            auth_info=AuthenticationInformation(
                auth_class_ref=PASSWORD_PROTECTED_TRANSPORT,
                timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
                issuer=self.source_id,
            ),
        )
        return self.authenticated(context, state)

    def process_login_form(self, context, transport):
        """
        Handle a (re)display or submission of the login form. Returns the response of a
        completed login, or a LoginPrompt to render.
        """
        params = context.request or {}
        token = params.get(d.STATE_PARAM)
        if not token:
            raise StateError(StateErrorKind.NOT_FOUND, message='Missing AuthState parameter')
        state = self.store.load(token, self.STAGE)

        remembered = transport.read_cookie(self.username_cookie) if self.remember_username_enabled else None
        if params.get('username'):
            username = params['username']
        elif remembered:
            username = remembered
        else:
            username = str(state.get(d.PREFILLED_USERNAME, ''))
        password = params.get('password', '')

        error = None
        if params.get('username') or password:
            if state.forced_username:
                username = state.forced_username

            if self.remember_username_enabled:
                if params.get('remember_username') == 'Yes':
                    transport.set_cookie(self.username_cookie, username, REMEMBER_USERNAME_MAX_AGE)
                else:
                    transport.delete_cookie(self.username_cookie)

            if self.remember_me_enabled and params.get('remember_me') == 'Yes':
                state[d.REMEMBER_ME] = True
                token = self.store.save(state, self.STAGE)

            try:
                return self.handle_login(context, token, username, password)
            except LoginError as e:
                logger.info(f"{self.source_id}: login failed with {e.kind.value}")
                error = e

        return self._prompt(token, state, username, error, remembered is not None)

    def _prompt(self, token, state, username, error, has_remembered_username):
        prompt = LoginPrompt(
            state_token=token,
            remember_me_enabled=self.remember_me_enabled,
            remember_me_checked=self.remember_me_checked,
            links=list(self.login_links),
        )
        if state.forced_username:
            prompt.username = state.forced_username
            prompt.force_username = True
        else:
            prompt.username = username
            prompt.remember_username_enabled = self.remember_username_enabled
            prompt.remember_username_checked = self.remember_username_checked or has_remembered_username

        if error is not None:
            prompt.error_code = error.kind.value
            prompt.error_message = error.display_message
            prompt.error_params = error.params
        return prompt

    def handle_login_form(self, context):
        transport = RequestTransport(context)
        result = self.process_login_form(context, transport)
        if isinstance(result, LoginPrompt):
            result = self.login_renderer(result)
        return transport.apply(result)

    def register_endpoints(self):
        return [("^{}$".format(self.endpoint), self.handle_login_form), ]


class StaticUserPassSource(UserPassSource):
    """
    Users listed in the configuration:

        users:
          alice:
            password: secret
            attributes:
              mail: [alice@example.org]
    """
    TYPE = 'userpass'

    def __init__(self, source_id, config: dict, *args, **kwargs):
        super().__init__(source_id, config, *args, **kwargs)
        self.users = config.get('users', {})

    def login(self, username, password):
        user = self.users.get(username)
        expected = user['password'] if user else ''
        if not hmac.compare_digest(expected.encode('utf-8'), (password or '').encode('utf-8')) or user is None:
            raise LoginError(LoginErrorKind.INVALID_CREDENTIALS, params={'username': username})

        attributes = {}
        for name, values in user.get('attributes', {}).items():
            attributes[name] = list(values) if isinstance(values, (list, tuple)) else [values]
        return attributes
