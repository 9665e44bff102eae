from .base import AuthSource
from .ldap import LdapUserPassSource
from .registry import AuthSourceRegistry
from .saml2_sp import SAML2SPSource
from .userpass import LoginPrompt, StaticUserPassSource, UserPassSource
