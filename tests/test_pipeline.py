import pytest
import satosa.response
from satosa.internal import InternalData

from satosa_authproc import definitions as d
from satosa_authproc.exceptions import ConfigError, ConfigErrorKind, FilterError
from satosa_authproc.pipeline import (
    FilterSpec,
    PipelineRunner,
    PipelineStatus,
    ProcessingFilter,
    Suspend,
    load_filter_class,
    load_filter_specs,
)
from satosa_authproc.state_store import AuthState

from .conftest import location, query

CALLS = []


class RecordingFilter(ProcessingFilter):
    def process(self, context, data):
        CALLS.append(self.config['label'])
        data.attributes.setdefault('visited', []).append(self.config['label'])


class ConsentFilter(ProcessingFilter):
    """ Leaves the pipeline once to ask for consent """
    def process(self, context, data):
        CALLS.append(self.config['label'])
        key = f'consent:{self.name}'
        if not context.state.get(key):
            context.state[key] = True
            return Suspend('https://consent.example.org/ask', params={'who': data.subject_id}, return_param='return')
        data.attributes['consent'] = ['given']
        return None


class FailingFilter(ProcessingFilter):
    def process(self, context, data):
        CALLS.append(self.config['label'])
        raise RuntimeError('directory exploded')


class NotAFilter(object):
    pass


def spec(cls, label):
    return FilterSpec(module=f'{__name__}.{cls.__name__}', config={'label': label}, name=label)


class Completion(object):
    def __init__(self):
        self.states = []

    def __call__(self, context, state):
        self.states.append(state)
        return satosa.response.Response('done')


@pytest.fixture(autouse=True)
def clear_calls():
    CALLS.clear()


@pytest.fixture
def completion():
    return Completion()


def authenticated_state():
    state = AuthState({d.SOURCE_ID: 'userpass'})
    state.data = InternalData(subject_id='alice', attributes={'uid': ['alice']})
    return state


class TestRun:

    def test_zero_filters_complete_immediately(self, store, context, completion) -> None:
        runner = PipelineRunner([], store, completion)

        response = runner.run(context, authenticated_state())

        assert response.message == 'done'
        assert completion.states[0][d.PIPELINE_STATUS] == PipelineStatus.COMPLETED.value
        assert completion.states[0].data.subject_id == 'alice'

    def test_filters_run_in_order(self, store, context, completion) -> None:
        runner = PipelineRunner([spec(RecordingFilter, label) for label in ('a', 'b', 'c')], store, completion)

        runner.run(context, authenticated_state())

        assert CALLS == ['a', 'b', 'c']
        assert completion.states[0].data.attributes['visited'] == ['a', 'b', 'c']
        assert completion.states[0].cursor == 3


class TestSuspendAndResume:

    def test_suspended_state_points_at_the_suspending_filter(self, store, context, completion) -> None:
        specs = [spec(RecordingFilter, 'f0'), spec(ConsentFilter, 'f1'), spec(RecordingFilter, 'f2')]
        runner = PipelineRunner(specs, store, completion, resume_url='https://proxy.example.org/authproc/resume')

        response = runner.run(context, authenticated_state())

        assert isinstance(response, satosa.response.Redirect)
        url = location(response)
        assert url.startswith('https://consent.example.org/ask?')
        params = query(url)
        assert params['who'] == 'alice'
        token = params[d.STATE_PARAM]
        assert params['return'] == f'https://proxy.example.org/authproc/resume?{d.STATE_PARAM}={token}'

        saved = store.load(token, d.STAGE_PIPELINE)
        assert saved.cursor == 1
        assert saved[d.PIPELINE_STATUS] == PipelineStatus.SUSPENDED.value
        assert saved.data.attributes['visited'] == ['f0']
        assert completion.states == []

    def test_resume_reenters_the_same_filter(self, store, context, completion) -> None:
        specs = [spec(RecordingFilter, 'f0'), spec(ConsentFilter, 'f1'),
                 spec(RecordingFilter, 'f2'), spec(RecordingFilter, 'f3')]
        runner = PipelineRunner(specs, store, completion)
        token = query(location(runner.run(context, authenticated_state())))[d.STATE_PARAM]

        runner.resume(context, store.load(token, d.STAGE_PIPELINE))

        assert CALLS == ['f0', 'f1', 'f1', 'f2', 'f3']
        data = completion.states[0].data
        assert data.attributes['visited'] == ['f0', 'f2', 'f3']
        assert data.attributes['consent'] == ['given']

    def test_without_resume_url_no_return_parameter(self, store, context, completion) -> None:
        runner = PipelineRunner([spec(ConsentFilter, 'f0')], store, completion)

        params = query(location(runner.run(context, authenticated_state())))

        assert 'return' not in params


class TestFailures:

    def test_failing_filter_aborts_with_cause(self, store, context, completion) -> None:
        specs = [spec(RecordingFilter, 'f0'), spec(FailingFilter, 'f1'), spec(RecordingFilter, 'f2')]
        runner = PipelineRunner(specs, store, completion)

        with pytest.raises(FilterError) as exc_info:
            runner.run(context, authenticated_state())

        assert CALLS == ['f0', 'f1']
        assert exc_info.value.index == 1
        assert exc_info.value.filter_name == 'f1'
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert completion.states == []

    def test_failure_goes_to_exception_handler(self, store, context, completion) -> None:
        runner = PipelineRunner([spec(FailingFilter, 'f0')], store, completion)
        state = authenticated_state()
        state[d.EXCEPTION_HANDLER_URL] = 'https://proxy.example.org/error'

        response = runner.run(context, state)

        token = query(location(response))[d.EXCEPTION_PARAM]
        saved, error = store.load_exception(token)
        assert isinstance(error, FilterError)
        assert error.params['cause'] == {'category': 'unhandled', 'kind': 'RuntimeError'}
        assert saved[d.PIPELINE_STATUS] == PipelineStatus.FAILED.value

    def test_unloadable_filter_is_a_config_error(self, store, context, completion) -> None:
        specs = [spec(RecordingFilter, 'f0'), FilterSpec('no.such.module.Filter', {}, 'broken'),
                 spec(RecordingFilter, 'f2')]
        runner = PipelineRunner(specs, store, completion)

        with pytest.raises(ConfigError) as exc_info:
            runner.run(context, authenticated_state())

        assert exc_info.value.kind == ConfigErrorKind.INVALID_CONFIG
        assert CALLS == ['f0']


    def test_misconfigured_filter_goes_to_exception_handler(self, store, context, completion) -> None:
        specs = [spec(RecordingFilter, 'f0'), FilterSpec('redirect_url', {'redirect_attr_name': 'redirect'}, 'adfs')]
        runner = PipelineRunner(specs, store, completion)
        state = authenticated_state()
        state[d.EXCEPTION_HANDLER_URL] = 'https://proxy.example.org/error'

        response = runner.run(context, state)

        saved, error = store.load_exception(query(location(response))[d.EXCEPTION_PARAM])
        assert isinstance(error, ConfigError)
        assert error.kind == ConfigErrorKind.INVALID_CONFIG
        assert error.params == {'filter': 'adfs'}
        assert saved.cursor == 1
        assert saved[d.PIPELINE_STATUS] == PipelineStatus.FAILED.value
        assert completion.states == []

    def test_misconfigured_filter_without_handler(self, store, context, completion) -> None:
        runner = PipelineRunner([FilterSpec('redirect_url', {}, 'adfs')], store, completion)

        with pytest.raises(ConfigError) as exc_info:
            runner.run(context, authenticated_state())
        assert isinstance(exc_info.value.__cause__, KeyError)


class TestLoading:

    def test_aliases(self) -> None:
        from satosa_authproc.filters import AttributeAdd, AttributeAddUsersGroups, RedirectUrlFilter

        assert load_filter_class('core:AttributeAdd') is AttributeAdd
        assert load_filter_class('ldap:AttributeAddUsersGroups') is AttributeAddUsersGroups
        assert load_filter_class('redirect_url') is RedirectUrlFilter

    @pytest.mark.parametrize('module', ['nope', 'no.such.Module', f'{__name__}.Missing', f'{__name__}.NotAFilter'])
    def test_bad_module(self, module) -> None:
        with pytest.raises(ConfigError):
            load_filter_class(module)

    def test_specs_from_plugin_entries(self) -> None:
        specs = load_filter_specs([
            {'module': 'core:AttributeAdd', 'config': {'attributes': {'a': 'b'}}},
            {'module': 'redirect_url', 'name': 'adfs', 'config': None},
        ])

        assert specs == [
            FilterSpec('core:AttributeAdd', {'attributes': {'a': 'b'}}, 'core:AttributeAdd#0'),
            FilterSpec('redirect_url', {}, 'adfs'),
        ]

    def test_entry_without_module(self) -> None:
        with pytest.raises(ConfigError):
            load_filter_specs([{'name': 'nameless'}])
