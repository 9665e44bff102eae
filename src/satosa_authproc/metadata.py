"""
Trust material lookup for the SAML response processor.
"""
import dataclasses
import logging
from types import MappingProxyType

from saml2 import BINDING_HTTP_REDIRECT

from . import definitions as d

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class EntityMetadata:
    entity_id: str
    signing_certificates: tuple = ()
    endpoints: MappingProxyType = dataclasses.field(default_factory=lambda: MappingProxyType({}))


class MetadataLookup(object):
    """ Returns EntityMetadata for an entity id in a metadata set, or None if unknown """

    def get(self, entity_id, set_name):
        raise NotImplementedError


class StaticMetadata(MetadataLookup):
    """
    Metadata given as configuration:

        saml20-idp-remote:
          https://idp.example.org/idp.xml:
            certificates: [MIIC...]
            endpoints:
              single_sign_on_service: https://idp.example.org/sso
    """
    def __init__(self, config: dict):
        self.sets = {}
        for set_name, entities in (config or {}).items():
            self.sets[set_name] = {
                entity_id: EntityMetadata(
                    entity_id=entity_id,
                    signing_certificates=tuple(entry.get('certificates', ())),
                    endpoints=MappingProxyType(dict(entry.get('endpoints', {}))),
                )
                for entity_id, entry in (entities or {}).items()
            }

    def get(self, entity_id, set_name):
        return self.sets.get(set_name, {}).get(entity_id)


class Saml2MetadataStore(MetadataLookup):
    """ Lookup backed by a pysaml2 MetadataStore, e.g. Saml2Client.metadata """
    DESCRIPTORS = {
        d.METADATA_IDP_REMOTE: 'idpsso',
        d.METADATA_SP_HOSTED: 'spsso',
    }

    def __init__(self, mds):
        self.mds = mds

    def get(self, entity_id, set_name):
        descriptor = self.DESCRIPTORS[set_name]
        try:
            certs = self.mds.certs(entity_id, descriptor, use='signing')
        except KeyError:
            logger.info(f"entity {entity_id} not found in metadata set {set_name}")
            return None
        endpoints = {}
        if descriptor == 'idpsso':
            services = self.mds.single_sign_on_service(entity_id, BINDING_HTTP_REDIRECT)
            if services:
                endpoints['single_sign_on_service'] = services[0]['location']
        return EntityMetadata(entity_id=entity_id, signing_certificates=tuple(certs),
                              endpoints=MappingProxyType(endpoints))
