import logging

from .. import definitions as d
from ..pipeline import PipelineRunner, load_filter_specs
from ..state_store import AuthState

logger = logging.getLogger(__name__)


class AuthSource(object):
    """
    Base class of authentication sources.

    A source begins a flow with begin_auth(), and once the user is authenticated calls
    authenticated(), which runs the source's processing filters ('authproc' in the
    configuration). When the last filter has completed, complete_auth() hands the
    identity to the relying side through `auth_callback_func(context, data)`.
    """
    TYPE = None

    def __init__(self, source_id, config: dict, store, auth_callback_func, registry=None):
        self.source_id = source_id
        self.config = config
        self.store = store
        self.auth_callback_func = auth_callback_func
        self.registry = registry
        self.pipeline = PipelineRunner(
            load_filter_specs(config.get('authproc')),
            store,
            on_complete=self.complete_auth,
            registry=registry,
            resume_url=config.get('resume_url'),
        )

    def new_state(self, exception_handler_url=None, exception_handler_func=None, **values):
        """
        A fresh AuthState for this source. Errors raised later in the flow are delivered
        to the exception handler URL or the 'package.module:function' handler given here.
        """
        state = AuthState(values)
        state[d.SOURCE_ID] = self.source_id
        if exception_handler_url:
            state[d.EXCEPTION_HANDLER_URL] = exception_handler_url
        if exception_handler_func:
            state[d.EXCEPTION_HANDLER_FUNC] = exception_handler_func
        return state

    def begin_auth(self, context, state):
        raise NotImplementedError

    def authenticated(self, context, state):
        logger.info(f"{self.source_id}: user authenticated, running {len(self.pipeline.filter_specs)} filters")
        return self.pipeline.run(context, state)

    def complete_auth(self, context, state):
        self.store.delete(state.id)
        state.pop(d.STATE_KEY, None)

        if state.remember_me and context.state is not None:
            context.state[d.SESSION_REMEMBER_ME] = True

        data = state.data
        logger.info(f"{self.source_id}: authentication of {data.subject_id} completed")
        return self.auth_callback_func(context, data)

    def register_endpoints(self):
        return []
