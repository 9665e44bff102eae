import logging

from ..pipeline import ProcessingFilter

logger = logging.getLogger(__name__)


class AttributeAdd(ProcessingFilter):
    """
    Add fixed attribute values:

        module: core:AttributeAdd
        config:
          replace: false
          attributes:
            affiliation: [member, staff]
    """
    def __init__(self, config: dict, *args, **kwargs):
        super().__init__(config, *args, **kwargs)
        self.replace = config.get('replace', False)
        self.attributes = {
            name: list(values) if isinstance(values, (list, tuple)) else [values]
            for name, values in config.get('attributes', {}).items()
        }

    def process(self, context, data):
        for name, values in self.attributes.items():
            if self.replace or name not in data.attributes:
                data.attributes[name] = list(values)
            else:
                data.attributes[name] = list(data.attributes[name]) + values
        logger.debug(f"added attributes {list(self.attributes)}")
