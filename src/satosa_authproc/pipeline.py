"""
Processing filter pipeline run after a successful authentication.

The position in the pipeline lives in the AuthState, not on a call stack: a filter that
needs the browser to visit another page returns Suspend, the runner saves the state with
the cursor still pointing at that filter and hands a redirect back to the HTTP layer. A
later request loads the state and re-enters the same filter.
"""
import dataclasses
import enum
import importlib
import logging
from urllib.parse import urlencode

import satosa.response

from . import definitions as d
from .exceptions import ConfigError, ConfigErrorKind, FilterError

logger = logging.getLogger(__name__)

FILTER_ALIASES = {
    'core:AttributeAdd': 'satosa_authproc.filters.attributes.AttributeAdd',
    'ldap:AttributeAddUsersGroups': 'satosa_authproc.filters.ldap_groups.AttributeAddUsersGroups',
    'redirect_url': 'satosa_authproc.filters.redirect_url.RedirectUrlFilter',
}


class PipelineStatus(enum.Enum):
    RUNNING = 'running'
    SUSPENDED = 'suspended'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclasses.dataclass(frozen=True)
class Suspend:
    """
    Returned by a filter that needs an external interaction. The browser is sent to `url`
    with `params` and the state token; with `return_param` set, the URL to resume the
    pipeline is passed along under that parameter name.
    """
    url: str
    params: dict = dataclasses.field(default_factory=dict)
    return_param: str = None


@dataclasses.dataclass(frozen=True)
class FilterSpec:
    module: str
    config: dict
    name: str

    def instantiate(self, registry=None):
        cls = load_filter_class(self.module)
        try:
            return cls(self.config, name=self.name, registry=registry)
        except ConfigError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG, params={'filter': self.name},
                              message=f'Filter {self.name} is misconfigured: {type(e).__name__} {e}') from e


class FilterContext(object):
    """ What a filter sees besides the identity: the request, the flow state and the authsources """
    def __init__(self, request, state, registry=None):
        self.request = request
        self.state = state
        self.registry = registry


class ProcessingFilter(object):
    """
    Base class for pipeline filters.

    A fresh instance is created for every pipeline execution, so instance attributes are
    request scoped. process() may rewrite `data` in place and returns None when done or a
    Suspend to leave the pipeline for an external interaction. On resume the same filter
    is called again; it keeps track of its own progress in `context.state`.
    """
    def __init__(self, config: dict, name=None, registry=None):
        self.config = config or {}
        self.name = name or type(self).__name__
        self.registry = registry

    def process(self, context, data):
        raise NotImplementedError


def load_filter_class(module_path):
    path = FILTER_ALIASES.get(module_path, module_path)
    module_name, _, class_name = path.rpartition('.')
    try:
        cls = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError, ValueError) as e:
        raise ConfigError(ConfigErrorKind.INVALID_CONFIG, params={'module': module_path},
                          message=f'Filter {module_path} could not be loaded') from e
    if not (isinstance(cls, type) and issubclass(cls, ProcessingFilter)):
        raise ConfigError(ConfigErrorKind.INVALID_CONFIG, params={'module': module_path},
                          message=f'{module_path} is not a processing filter')
    return cls


def load_filter_specs(plugins):
    """
    Build the FilterSpecs of a pipeline from satosa-style plugin entries:

        - module: ldap:AttributeAddUsersGroups
          name: groups
          config:
            authsource: corp-ldap
    """
    specs = []
    for position, plugin in enumerate(plugins or []):
        if 'module' not in plugin:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG, params={'index': position},
                              message=f'Filter entry {position} has no module')
        specs.append(FilterSpec(
            module=plugin['module'],
            config=plugin.get('config') or {},
            name=plugin.get('name') or f"{plugin['module']}#{position}",
        ))
    return specs


class PipelineRunner(object):
    """ Drives the filters of one authentication source against an AuthState """

    def __init__(self, filter_specs, store, on_complete, registry=None, resume_url=None):
        self.filter_specs = list(filter_specs)
        self.store = store
        self.on_complete = on_complete
        self.registry = registry
        self.resume_url = resume_url

    def run(self, context, state):
        state.cursor = 0
        return self._run_from_cursor(context, state)

    def resume(self, context, state):
        logger.info(f"resuming pipeline of {state.source_id} at filter {state.cursor}")
        return self._run_from_cursor(context, state)

    def _run_from_cursor(self, context, state):
        data = state.data
        state[d.PIPELINE_STATUS] = PipelineStatus.RUNNING.value

        while state.cursor < len(self.filter_specs):
            index = state.cursor
            spec = self.filter_specs[index]
            try:
                processing_filter = spec.instantiate(self.registry)
            except ConfigError as e:
                logger.error(f"filter {spec.name} could not be created: {e.message}")
                return self._fail(state, data, e)

            filter_context = FilterContext(context, state, self.registry)
            try:
                result = processing_filter.process(filter_context, data)
            except Exception as e:
                logger.warning(f"filter {spec.name} at position {index} failed: {type(e).__name__}")
                return self._fail(state, data, FilterError(spec.name, index, e))

            if isinstance(result, Suspend):
                return self._suspend(state, data, spec, result)
            state.cursor = index + 1

        state.data = data
        state[d.PIPELINE_STATUS] = PipelineStatus.COMPLETED.value
        logger.info(f"pipeline of {state.source_id} completed after {len(self.filter_specs)} filters")
        return self.on_complete(context, state)

    def _suspend(self, state, data, spec, suspend):
        state.data = data
        state[d.PIPELINE_STATUS] = PipelineStatus.SUSPENDED.value
        token = self.store.save(state, d.STAGE_PIPELINE)

        params = dict(suspend.params)
        params[d.STATE_PARAM] = token
        if suspend.return_param and self.resume_url:
            params[suspend.return_param] = self.resume_url + '?' + urlencode({d.STATE_PARAM: token})
        separator = '&' if '?' in suspend.url else '?'
        logger.info(f"pipeline suspended at filter {spec.name}")
        return satosa.response.Redirect(suspend.url + separator + urlencode(params))

    def _fail(self, state, data, error):
        state.data = data
        state[d.PIPELINE_STATUS] = PipelineStatus.FAILED.value
        return self.store.throw_exception(state, error)
