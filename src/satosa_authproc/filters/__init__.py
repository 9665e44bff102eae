from .attributes import AttributeAdd
from .directory import DirectoryFilter
from .ldap_groups import AttributeAddUsersGroups
from .redirect_url import RedirectUrlFilter
