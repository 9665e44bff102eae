"""
Resumable authentication flows for SATOSA-style identity proxies.
* Authenticate with a pluggable source: username/password, LDAP, or an external SAML2 IdP
* Validate SAML2 responses and extract the assertion
* Run an ordered chain of processing filters over the identity, any of which may leave
  for an external page and resume later

Persist state: The state of a flow is needed again in a later request (after the IdP
answered, after a login form was posted, after a filter's external page). It is stored
encrypted in redis under a random token, and only the token travels with the browser.
Every save is tagged with the stage it belongs to; a token presented to another stage is
refused.

The Redis interface is using a basic client per store, which is OK for the modest deployment.
"""

from .authsources import AuthSourceRegistry, LdapUserPassSource, SAML2SPSource, StaticUserPassSource
from .pipeline import FilterSpec, PipelineRunner, ProcessingFilter, Suspend
from .saml2_response import Assertion, ResponseProcessor, decode_response
from .state_store import AuthState, StateStore
