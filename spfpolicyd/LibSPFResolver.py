#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains the SPF authentication resolver

The policy handlers only rely on:
  > SPFRequest.build: validates an identity/scope/IP tuple, returning a
    RequestBuild holding either the request or the reason of the failure
  > SPFResolver.check: evaluates a request and returns an SPFResult
    (code, local explanation, authority explanation, Received-SPF header)

SPFResolver delegates the record evaluation (RFC 7208 check_host) to pyspf.
DNS failures become 'temperror', broken records or exceeded processing
limits become 'permerror'; no DNS condition is raised.
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from collections import namedtuple
from dataclasses import dataclass
from logging import getLogger
from urllib.parse import quote
import ipaddress, re



# Other libs

import dns.exception
import dns.resolver
import spf



# Owned libs

from spfpolicyd.LibSPFServer import ConfigError, PolicyConfig



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')

## Constants
SCOPE_HELO='helo'
SCOPE_MAILFROM='mfrom'
SCOPES=(SCOPE_HELO, SCOPE_MAILFROM)

LABEL_RE=re.compile(r'^(?!-)[A-Za-z0-9_-]{1,63}(?<!-)$')



# Classes

RequestBuild=namedtuple('RequestBuild', ['request', 'error'])


@dataclass(frozen=True)
class SPFResult:
    code: str
    localExplanation: str
    authorityExplanation: str
    header: str


@dataclass(frozen=True)
class SPFRequest:
    scope: str
    identity: str
    localPart: str
    domain: str
    ip: object
    heloIdentity: str = ''


    @classmethod
    def build(cls, scope:str, identity:str, ipAddress:str, heloIdentity:str=''):
        """Validates an SPF request.

        Args:
            scope (str): SCOPE_HELO or SCOPE_MAILFROM
            identity (str): HELO name or envelope sender
            ipAddress (str): client IP address
            heloIdentity (str, optional): HELO name given along the envelope
                sender. Defaults to ''.

        Returns:
            RequestBuild: (request, None) or (None, reason)
        """
        if scope not in SCOPES:
            return RequestBuild(None, f'Unknown scope {scope!r}')

        try:
            ip=ipaddress.ip_address((ipAddress or '').strip())
        except ValueError:
            return RequestBuild(None, f'Invalid IP address {ipAddress!r}')
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip=ip.ipv4_mapped

        identity=(identity or '').strip()
        if scope == SCOPE_HELO:
            localPart, domain = 'postmaster', identity
        elif '@' in identity:
            localPart, domain = identity.rsplit('@', 1)
            localPart=localPart or 'postmaster'
        else:
            localPart, domain = 'postmaster', identity

        domain=domain.rstrip('.')
        if not isValidDomain(domain):
            return RequestBuild(None, f'Invalid {scope} identity {identity!r}')

        return RequestBuild(cls(
            scope=scope,
            identity=identity,
            localPart=localPart,
            domain=domain,
            ip=ip,
            heloIdentity=(heloIdentity or '').strip(),
        ), None)


    @property
    def sender(self) -> str:
        return f'{self.localPart}@{self.domain}'


class SPFResolver:

    def __init__(self, config:PolicyConfig):
        """SPF evaluation backed by pyspf (which queries through dnspython).

        Args:
            config (PolicyConfig): frozen configuration

        Raises:
            ConfigError: Unusable authority explanation template
        """
        self.config=config
        self.receiver=config.hostname
        try:
            config.authorityExplanation.format(
                scope='', identity='', ip='', receiver='')
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigError(f'Bad authority explanation template: {e!r}')

        ## pyspf resolves with the default dnspython resolver
        if config.nameservers:
            dnsResolver=dns.resolver.Resolver(configure=False)
            dnsResolver.nameservers=list(config.nameservers)
            dns.resolver.default_resolver=dnsResolver
            logger.debug('DNS servers: {}'.format(', '.join(config.nameservers)))


    def newQuery(self, request:SPFRequest):
        """Prepares the pyspf query of a request, its default explanation
        being the configured template.

        Args:
            request (SPFRequest): validated request

        Returns:
            spf.query: query ready to be checked
        """
        if request.scope == SCOPE_HELO:
            ## An empty sender makes pyspf check the HELO identity
            query=spf.query(
                i=str(request.ip), s='', h=request.domain,
                receiver=self.receiver,
                timeout=self.config.timeout, querytime=self.config.lifetime)
        else:
            query=spf.query(
                i=str(request.ip), s=request.sender, h=request.heloIdentity,
                receiver=self.receiver,
                timeout=self.config.timeout, querytime=self.config.lifetime)
        query.set_default_explanation(self._defaultExplanation(request))
        return query


    def check(self, request:SPFRequest) -> SPFResult:
        """Evaluates the request (check_host of the identity domain).

        Args:
            request (SPFRequest): validated request

        Returns:
            SPFResult: result of the evaluation
        """
        query=self.newQuery(request)
        try:
            code, _, explanation = query.check()
        except dns.exception.DNSException as e:
            ## Resolver misconfiguration, not caught by pyspf
            code, explanation = 'temperror', f'DNS failure: {e!r}'

        logger.debug(f'SPF {request.scope} {request.identity} '
            f'from {request.ip}: {code} ({explanation})')

        return SPFResult(
            code=code,
            localExplanation=query.get_header_comment(code),
            authorityExplanation=explanation if code == 'fail' else '',
            header='Received-SPF: ' + query.get_header(code, self.receiver),
        )


    def _defaultExplanation(self, request:SPFRequest) -> str:
        identity=request.domain if request.scope == SCOPE_HELO else request.sender
        return self.config.authorityExplanation.format(
            scope=request.scope,
            identity=quote(identity, safe='@'),
            ip=request.ip,
            receiver=self.receiver,
        )



# Functions

def isValidDomain(domain:str) -> bool:
    """Checks the syntax of a domain name (labels of at most 63 characters,
    253 characters in total).
    """
    if not domain or len(domain) > 253:
        return False
    return all(LABEL_RE.match(label) for label in domain.split('.'))
