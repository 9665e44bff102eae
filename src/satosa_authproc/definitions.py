# request parameters carrying state tokens
STATE_PARAM = 'AuthState'
EXCEPTION_PARAM = 'AuthStateException'
RELAY_STATE_PARAM = 'RelayState'

# stage ids
STAGE_USERPASS = 'core-login'
STAGE_SP_SENT = 'SP-sent'
STAGE_PIPELINE = 'pipeline'
STAGE_EXCEPTION = 'exception'

# AuthState keys
STATE_KEY = 'authproc:id'
SOURCE_ID = 'authproc:source'
CURSOR = 'authproc:pipeline.cursor'
PIPELINE_STATUS = 'authproc:pipeline.status'
DATA = 'authproc:data'
FORCED_USERNAME = 'authproc:forced_username'
PREFILLED_USERNAME = 'authproc:username'
REMEMBER_ME = 'authproc:remember_me'
LOGOUT_STATE = 'authproc:logout'
IDP = 'authproc:saml.idp'
EXCEPTION_HANDLER_URL = 'authproc:exception.url'
EXCEPTION_HANDLER_FUNC = 'authproc:exception.func'
EXCEPTION_DATA = 'authproc:exception.data'

# SATOSA session state key set when the user asked to be remembered
SESSION_REMEMBER_ME = 'authproc_remember_me'

# metadata sets
METADATA_IDP_REMOTE = 'saml20-idp-remote'
METADATA_SP_HOSTED = 'saml20-sp-hosted'
