from http.cookies import SimpleCookie


class RequestTransport(object):
    """
    Cookie capabilities of the current request. Reads come from the satosa context's
    Cookie header, writes are queued and added to the outgoing response by apply().
    """
    def __init__(self, context, secure=True):
        self.context = context
        self.secure = secure
        self.outgoing = SimpleCookie()

    def read_cookie(self, name):
        cookie = SimpleCookie(self.context.cookie or '')
        if name not in cookie:
            return None
        return cookie[name].value

    def set_cookie(self, name, value, max_age, path='/'):
        self.outgoing[name] = value
        morsel = self.outgoing[name]
        morsel['max-age'] = max_age
        morsel['path'] = path
        morsel['httponly'] = True
        morsel['samesite'] = 'Lax'
        if self.secure:
            morsel['secure'] = True

    def delete_cookie(self, name, path='/'):
        self.set_cookie(name, '', 0, path=path)

    def apply(self, response):
        for morsel in self.outgoing.values():
            response.headers.append(('Set-Cookie', morsel.OutputString()))
        return response
