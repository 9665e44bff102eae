from satosa.response import Response

from satosa_authproc.transport import RequestTransport


class TestRequestTransport:

    def test_read_cookie(self, context) -> None:
        context.cookie = 'local-username=alice; other=1'

        transport = RequestTransport(context)

        assert transport.read_cookie('local-username') == 'alice'
        assert transport.read_cookie('missing') is None

    def test_no_cookie_header(self, context) -> None:
        assert RequestTransport(context).read_cookie('local-username') is None

    def test_set_cookie_is_applied_to_response(self, context) -> None:
        transport = RequestTransport(context)
        transport.set_cookie('local-username', 'alice', 3600)

        response = transport.apply(Response('ok'))

        cookie = dict(response.headers)['Set-Cookie']
        assert cookie.startswith('local-username=alice;')
        assert 'Max-Age=3600' in cookie
        assert 'HttpOnly' in cookie
        assert 'Secure' in cookie
        assert 'SameSite=Lax' in cookie

    def test_delete_cookie(self, context) -> None:
        transport = RequestTransport(context, secure=False)
        transport.delete_cookie('local-username')

        cookie = dict(transport.apply(Response('ok')).headers)['Set-Cookie']
        assert 'Max-Age=0' in cookie
        assert 'Secure' not in cookie
