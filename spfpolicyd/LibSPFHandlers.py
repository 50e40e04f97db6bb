#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains the policy handlers

Every handler is called with the transaction attributes and the cache entry
of the message, and returns a directive (NO_OPINION when it does not decide):
  > LocalOriginExemption: skips SPF for local connections
  > RelayExemption: skips SPF for trusted relays
  > SPFHandler: HELO check, then MAIL FROM check
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from abc import ABC, abstractmethod
from logging import getLogger



# Owned libs

from spfpolicyd.LibSPFServer import AddressSet
from spfpolicyd.LibSPFDirective import (NO_OPINION, Accept, Defer, Reject,
    cleanText)
from spfpolicyd.LibSPFResolver import SPFRequest, SCOPE_HELO, SCOPE_MAILFROM



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')

## Headers of exempted connections
LOCAL_ORIGIN_HEADER='X-Comment: SPF not applicable to localhost connection - skipped check'
RELAY_HEADER='X-Comment: SPF skipped for whitelisted relay - skipped check'



# Classes

class PolicyHandler(ABC):
    name=None

    @abstractmethod
    def evaluate(self, attributes:dict, entry):
        """Gives the opinion of the handler on a transaction.

        Args:
            attributes (dict): transaction attributes
            entry (CacheEntry): cache entry of the message

        Returns:
            Directive: decision or NO_OPINION
        """


class _AddressExemption(PolicyHandler):
    header=None

    def __init__(self, addresses:AddressSet):
        self.addresses=addresses


    def evaluate(self, attributes:dict, entry=None):
        clientAddress=attributes.get('client_address', '')
        if clientAddress and clientAddress in self.addresses:
            return Accept(header=self.header)
        return NO_OPINION


class LocalOriginExemption(_AddressExemption):
    name='exempt_localhost'
    header=LOCAL_ORIGIN_HEADER


class RelayExemption(_AddressExemption):
    name='exempt_relay'
    header=RELAY_HEADER


class SPFHandler(PolicyHandler):
    name='sender_policy_framework'

    def __init__(self, resolver, verbose:bool=False):
        """SPF check of the HELO identity, then of the envelope sender.

        Args:
            resolver (SPFResolver): object with a check(request) method
            verbose (bool, optional): logs every SPF result. Defaults to False.
        """
        self.resolver=resolver
        self.verbose=verbose


    def evaluate(self, attributes:dict, entry):
        helo=attributes.get('helo_name', '')
        clientAddress=attributes.get('client_address', '')
        sender=attributes.get('sender', '')

        # HELO identity
        if entry.heloResult is None:
            build=SPFRequest.build(
                scope=SCOPE_HELO,
                identity=helo,
                ipAddress=clientAddress,
                heloIdentity=helo,
            )
            if build.error:
                logger.info('{}: Unable to create SPF request for HELO/EHLO '
                    '{!r}: {}'.format(self._queueId(attributes), helo, build.error))
                return NO_OPINION
            entry.heloResult=self.resolver.check(build.request)

        heloResult=entry.heloResult
        self._logResult(attributes, heloResult, 'HELO/EHLO', helo)

        if heloResult.code == 'fail':
            return Reject(reason=cleanText(heloResult.authorityExplanation))
        if heloResult.code == 'temperror':
            return Defer(reason=cleanText(heloResult.localExplanation))

        if sender == '':
            # Null sender: the HELO result stands for the whole message
            if entry.claimHeader():
                return Accept(header=heloResult.header)
            return NO_OPINION

        # Envelope sender identity
        if entry.mailfromResult is None:
            build=SPFRequest.build(
                scope=SCOPE_MAILFROM,
                identity=sender,
                ipAddress=clientAddress,
                heloIdentity=helo,
            )
            if build.error:
                logger.info('{}: Unable to create SPF request for MAIL FROM '
                    '{!r}: {}'.format(self._queueId(attributes), sender, build.error))
                return NO_OPINION
            entry.mailfromResult=self.resolver.check(build.request)

        mailfromResult=entry.mailfromResult
        self._logResult(attributes, mailfromResult, 'envelope-from', sender)

        if mailfromResult.code == 'fail':
            return Reject(reason=cleanText(mailfromResult.authorityExplanation))
        if mailfromResult.code == 'temperror':
            return Defer(reason=cleanText(mailfromResult.localExplanation))
        if entry.claimHeader():
            return Accept(header=mailfromResult.header)
        return NO_OPINION


    def _queueId(self, attributes:dict) -> str:
        return attributes.get('queue_id') or 'NOQUEUE'


    def _logResult(self, attributes:dict, result, label:str, identity:str):
        if not self.verbose:
            return
        logger.info('{}: SPF {}: {}: {}, IP Address: {}, Recipient: {}'.format(
            self._queueId(attributes),
            result.code,
            label,
            cleanText(identity),
            attributes.get('client_address', ''),
            attributes.get('recipient', ''),
        ))
