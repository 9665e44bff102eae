import logging

from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn

from ..directory import search, values_of
from .directory import DirectoryFilter

logger = logging.getLogger(__name__)

# LDAP_MATCHING_RULE_IN_CHAIN, transitive group membership in Active Directory
IN_CHAIN = '1.2.840.113556.1.4.1941'


def group_name(dn):
    try:
        return parse_dn(dn)[0][1]
    except (LDAPException, IndexError):
        return dn


class AttributeAddUsersGroups(DirectoryFilter):
    """
    Add the names of the groups the user is a member of to the groups attribute.

    The user is looked up by the username attribute (taken from the user's attributes,
    or the subject id when absent). On Active Directory nested memberships are resolved
    by the directory; elsewhere the user's memberOf values are used.
    """

    def lookup(self, context, data):
        username = self._username(data)
        if username is None:
            logger.info(f"{self.title}No username available, skipping group lookup")
            return None

        groups = self.get_groups(username)
        attribute = self.attribute_map['groups']
        merged = list(data.attributes.get(attribute, []))
        merged.extend(group for group in groups if group not in merged)
        data.attributes[attribute] = merged
        logger.info(f"{self.title}Added {len(groups)} groups for {username}")
        return None

    def _username(self, data):
        values = data.attributes.get(self.attribute_map['username'])
        if values:
            return values[0]
        return data.subject_id

    def get_groups(self, username):
        attribute_map = self.attribute_map
        connection = self.get_connection()

        user_filter = (f"(&({attribute_map['type']}={self.type_map['user']})"
                       f"({attribute_map['username']}={escape_filter_chars(username)}))")
        entries = search(connection, self.base_dn, user_filter, [attribute_map['memberof']])
        if not entries:
            logger.info(f"{self.title}User {username} not found in the directory")
            return []
        dn, attributes = entries[0]

        if self.product == 'ACTIVEDIRECTORY':
            group_filter = (f"(&({attribute_map['type']}={self.type_map['group']})"
                            f"({attribute_map['member']}:{IN_CHAIN}:={escape_filter_chars(dn)}))")
            group_entries = search(connection, self.base_dn, group_filter, [attribute_map['name']])
            names = [values_of(group_attributes, attribute_map['name'])[:1] or [group_name(group_dn)]
                     for group_dn, group_attributes in group_entries]
            groups = [name[0] for name in names]
        else:
            groups = [group_name(group_dn) for group_dn in values_of(attributes, attribute_map['memberof'])]

        unique = []
        for group in groups:
            if group not in unique:
                unique.append(group)
        return unique
