#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains the decision engine

The handlers run in a fixed order (local exemption, relay exemption, SPF)
and the first directive other than NO_OPINION is the answer to the MTA.
When no handler decides, the configured default response is used.
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from logging import getLogger



# Owned libs

from spfpolicyd.LibSPFServer import PolicyConfig
from spfpolicyd.LibSPFDirective import NoOpinion, formatAction, parseDirective
from spfpolicyd.LibSPFCache import ResultCache
from spfpolicyd.LibSPFHandlers import (LocalOriginExemption, RelayExemption,
    SPFHandler)
from spfpolicyd.LibSPFResolver import SPFResolver



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')



# Classes

class DecisionEngine:

    def __init__(self, config:PolicyConfig, handlers:list, cache:ResultCache):
        """Runs the handlers of a transaction in order.

        Args:
            config (PolicyConfig): frozen configuration
            handlers (list): PolicyHandler objects, in priority order
            cache (ResultCache): results cache shared by the transactions
        """
        self.config=config
        self.handlers=list(handlers)
        self.cache=cache
        self.default=parseDirective(config.defaultResponse)


    def decide(self, attributes:dict):
        """Returns the directive for one transaction.

        Args:
            attributes (dict): transaction attributes

        Returns:
            Directive: first decisive directive, else the default one
        """
        entry=self.cache.getOrCreate(attributes.get('instance'))
        with entry.lock:
            for handler in self.handlers:
                try:
                    directive=handler.evaluate(attributes, entry)
                except Exception:
                    logger.exception(f'handler {handler.name} failed')
                    continue
                if self.config.verbose:
                    logger.info(
                        f'handler {handler.name}: {formatAction(directive)}')
                if not isinstance(directive, NoOpinion):
                    return directive
        return self.default


    def process(self, attributes:dict) -> str:
        """Decides and formats the action of one transaction."""
        action=formatAction(self.decide(attributes))
        logger.info(f'Policy action={action}')
        return action



# Functions

def buildEngine(config:PolicyConfig, resolver=None, cache:ResultCache=None):
    """Builds the engine with the handlers in their fixed order.

    Args:
        config (PolicyConfig): frozen configuration
        resolver (optional): SPF resolver. Defaults to SPFResolver(config).
        cache (ResultCache, optional): Defaults to a cache sized by config.

    Returns:
        DecisionEngine: ready-to-use engine
    """
    if resolver is None:
        resolver=SPFResolver(config)
    if cache is None:
        cache=ResultCache(maxEntries=config.cacheMaxEntries, ttl=config.cacheTtl)
    handlers=[
        LocalOriginExemption(config.localAddresses),
        RelayExemption(config.relayAddresses),
        SPFHandler(resolver, verbose=config.verbose),
    ]
    logger.debug('Handlers: {}'.format(
        ', '.join(handler.name for handler in handlers)))
    return DecisionEngine(config, handlers, cache)
