import logging

from ..pipeline import ProcessingFilter, Suspend

logger = logging.getLogger(__name__)

REDIRECTED_KEY = 'authproc:redirect_url.redirected'


class RedirectUrlFilter(ProcessingFilter):
    """
    Handle following events:
    * Processing an identity:
        if the redirect attribute is set in the attribute statement:
            Suspend the pipeline and redirect to the responder (ADFS role selection,
            profile completion)
    * Resuming after the responder sent the user back:
        Drop the redirect attribute and continue with the next filter
    """
    def __init__(self, config: dict, *args, **kwargs):
        super().__init__(config, *args, **kwargs)
        self.self_entityid = config['self_entityid']
        self.redir_attr = config['redirect_attr_name']
        self.return_param = config.get('return_param', 'wreply')
        logger.info('RedirectUrlFilter active')

    def _redirected_key(self):
        return f'{REDIRECTED_KEY}:{self.name}'

    def process(self, context, data):
        if context.state.pop(self._redirected_key(), False):
            logger.info(f"Returned from redirect for attribute {self.redir_attr}")
            data.attributes.pop(self.redir_attr, None)
            return None

        if self.redir_attr not in data.attributes:
            logger.info(f"Testing for Attribute {self.redir_attr}: Attribute not found: Skipping redirect.")
            return None
        logger.info(f"Testing for Attribute {self.redir_attr}: Attribute found: Redirecting")

        redirecturl = data.attributes[self.redir_attr][0]
        context.state[self._redirected_key()] = True
        logger.info(f"redirect to {redirecturl}")
        return Suspend(redirecturl, params={'wtrealm': self.self_entityid}, return_param=self.return_param)
