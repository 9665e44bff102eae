import json


class SerializableState(object):
    """ Stage-tagged envelope an AuthState is stored in between requests """
    def __init__(self, state, stage, expires):
        self.serializable = {'stage': stage, 'expires': expires, 'state': dict(state)}

    @classmethod
    def json_loads(cls, blob):
        serializable = json.loads(blob)
        instance = cls(serializable['state'], serializable['stage'], serializable['expires'])
        return instance

    def json_dumps(self):
        return json.dumps(self.serializable)

    def stage(self):
        return self.serializable['stage']

    def expires(self):
        return self.serializable['expires']

    def state(self):
        return self.serializable['state']
