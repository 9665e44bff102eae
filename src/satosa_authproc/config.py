import logging

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError, ConfigErrorKind

logger = logging.getLogger(__name__)


class LayeredConfig(object):
    """
    Configuration assembled from ordered layers. Later layers win key by key; a key whose
    value is None in a layer does not shadow an earlier layer. Validation happens once,
    on the merged result.
    """
    def __init__(self):
        self.layers = []

    def add_layer(self, name, values):
        self.layers.append((name, dict(values or {})))
        return self

    def merge(self):
        merged = {}
        for name, values in self.layers:
            for key, value in values.items():
                if value is None:
                    continue
                merged[key] = value
        return merged

    def origin(self, key):
        """ Name of the layer the merged value of `key` comes from """
        for name, values in reversed(self.layers):
            if values.get(key) is not None:
                return name
        return None

    def validate(self, model):
        try:
            return model.model_validate(self.merge())
        except ValidationError as e:
            raise ConfigError(ConfigErrorKind.INVALID_CONFIG, message=f'Invalid configuration: {e}') from e


def load_yaml(path):
    with open(path) as f:
        config = yaml.safe_load(f)
    if not isinstance(config, dict):
        raise ConfigError(ConfigErrorKind.INVALID_CONFIG, message=f'{path} does not contain a mapping')
    logger.info(f"loaded configuration from {path}")
    return config
