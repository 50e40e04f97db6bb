#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains functionalities for the SPF policy daemon

- Context class to manage the configuration file
- PolicyConfig frozen configuration given to every component
- AddressSet class to test client addresses against CIDR ranges
- Logging configuration and fatal startup handling
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from configparser import ConfigParser
from dataclasses import dataclass
from os.path import exists, expandvars
from logging import getLogger
import logging.config, ipaddress, socket, sys



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')

## Constants
CONFIG_FILE="${SPFPOLICYD_PATH}/spfPolicyd.conf"

LOG_FORMAT='%(levelname)s:  %(asctime)s  [%(process)d][%(filename)s][%(funcName)s]  %(message)s'
SYSLOG_FORMAT='spfPolicyd[%(process)d]: %(levelname)s: %(message)s'

DEFAULT_CONFIG="""\
[GLOBAL]
; Logging elements, including file path and level. Leave logging empty to
; disable the log file.
logging=${SPFPOLICYD_PATH}/spfPolicyd.log
log_level=INFO
; Verbose mode dumps every attribute and every handler decision.
verbose=no
; Diagnostics channel through syslog (address is a socket path or host:port).
syslog=no
syslog_address=/dev/log
syslog_facility=mail
; Receiver name used in generated Received-SPF headers (empty for local FQDN).
hostname=


[POLICY]
; Action given when no handler has an opinion.
default_response=DUNNO
; Comma-separated CIDR ranges exempted from SPF checks.
local_addresses=127.0.0.0/8, ::ffff:127.0.0.0/104, ::1/128
relay_addresses=
; Explanation used on fail when the domain publishes no exp= modifier.
; Available fields: {scope}, {identity}, {ip}, {receiver}
authority_explanation=Please see https://www.open-spf.org/Why?s={scope};id={identity};ip={ip};r={receiver}


[RESOLVER]
; Seconds per DNS query and total seconds per SPF evaluation.
timeout=5
lifetime=20
; Comma-separated nameservers (empty for system resolvers).
nameservers=


[CACHE]
; Message instances remembered (LRU) and for how long (seconds).
max_entries=10000
ttl=3600


[DAEMON]
; stdio when spawned by Postfix, tcp for a standalone listener.
mode=stdio
host=127.0.0.1
port=10023


[WEB_API]
; Inspection API listening host & port
host=127.0.0.1
port=8023


; The ${SPFPOLICYD_PATH} environment variable is the current root directory,
; set by the launchers. It can be used in all path variables
"""

TRUE_VALUES=('1', 'yes', 'true', 'on')



# Exceptions

class ConfigError(ValueError):
    """Raised when the configuration cannot be used."""



# Classes

class AddressSet:

    def __init__(self, networks:list=[]):
        """Set of CIDR ranges tested with the 'in' operator.

        Args:
            networks (list, optional): CIDR strings. Defaults to empty list.

        Raises:
            ConfigError: Unparsable CIDR range
        """
        self.networks=[]
        for network in networks:
            try:
                self.networks.append(
                    ipaddress.ip_network(network.strip(), strict=False))
            except ValueError as e:
                raise ConfigError(f'Bad network range {network!r}: {e}')


    @classmethod
    def fromString(cls, value:str):
        return cls([item for item in value.split(',') if item.strip()])


    def __contains__(self, address) -> bool:
        if isinstance(address, str):
            try:
                address=ipaddress.ip_address(address.strip())
            except ValueError:
                return False
        return any(
            address.version == network.version and address in network
            for network in self.networks
        )


    def __len__(self):
        return len(self.networks)


    def __repr__(self):
        return 'AddressSet({})'.format(
            ', '.join(str(network) for network in self.networks))


@dataclass(frozen=True)
class PolicyConfig:
    """Immutable configuration built once at startup."""
    hostname: str
    verbose: bool
    defaultResponse: str
    localAddresses: AddressSet
    relayAddresses: AddressSet
    authorityExplanation: str
    timeout: float
    lifetime: float
    nameservers: tuple
    cacheMaxEntries: int
    cacheTtl: float


class Context:
    contexts=[
        'GLOBAL',
        'POLICY',
        'RESOLVER',
        'CACHE',
        'DAEMON',
        'WEB_API',
    ]
    def __init__(self):
        """This class loads the configurations for given contexts.
        It initiates the contexts to empty dicts.
        """
        for context in self.contexts:
            self.__setattr__(context, {})


    def loadConfig(self,filename:str):
        """Load specific contexts defined in configuration file, and save it in the
        contexts defined in this module.

        Args:
            filename (str): path name of config file.

        Raises:
            ConfigError: Missing section in the configuration file
        """
        filename=expandvars(filename)
        if not exists(filename):
            logger.warning(f'Cannot find {filename}, creating a default one.')
            with open(filename,"w") as file:
                    file.write(DEFAULT_CONFIG)

        # Loading config
        logger.debug(f'Loading config from {filename}.')
        config=ConfigParser(comment_prefixes=";", interpolation=None)
        config.read(filename)

        for context in self.contexts:
            logger.debug(f'\tLoading {context} context:')
            if not config.has_section(context):
                raise ConfigError(f'Section [{context}] missing in {filename}')
            resolEnvVar=dict(config[context])
            for key, value in resolEnvVar.items():
                if value.find('$') != -1:
                    resolEnvVar[key]=expandvars(value)
                    logger.debug(f'Resolving {resolEnvVar[key]}')
            self.__setattr__(context, resolEnvVar)
            logger.debug('\t\t{}'.format(self.__getattribute__(context)))


    def freeze(self) -> PolicyConfig:
        """Builds the immutable configuration given to the policy components.

        Raises:
            ConfigError: Missing or malformed value

        Returns:
            PolicyConfig: frozen configuration
        """
        try:
            return PolicyConfig(
                hostname=self.GLOBAL.get('hostname') or socket.getfqdn(),
                verbose=isTrue(self.GLOBAL.get('verbose', 'no')),
                defaultResponse=self.POLICY.get('default_response') or 'DUNNO',
                localAddresses=AddressSet.fromString(
                    self.POLICY.get('local_addresses', '')),
                relayAddresses=AddressSet.fromString(
                    self.POLICY.get('relay_addresses', '')),
                authorityExplanation=self.POLICY['authority_explanation'],
                timeout=float(self.RESOLVER['timeout']),
                lifetime=float(self.RESOLVER['lifetime']),
                nameservers=tuple(
                    server.strip() for server in
                    self.RESOLVER.get('nameservers', '').split(',')
                    if server.strip()),
                cacheMaxEntries=int(self.CACHE['max_entries']),
                cacheTtl=float(self.CACHE['ttl']),
            )
        except ConfigError:
            raise
        except KeyError as e:
            raise ConfigError(f'Missing configuration item {e}')
        except (TypeError, ValueError) as e:
            raise ConfigError(f'Bad configuration value: {e}')



# Functions

def isTrue(value:str) -> bool:
    return str(value).strip().lower() in TRUE_VALUES


def loggingConfig(context:Context, stdio:bool=True) -> dict:
    """Builds the logging.config dictionary for the daemon.

    Args:
        context (Context): loaded configuration
        stdio (bool, optional): stdout carries the protocol. Defaults to True.

    Returns:
        dict: dictConfig-compatible configuration
    """
    handlers={}
    if context.GLOBAL.get('logging'):
        handlers['file_handler']={
            'class':'logging.FileHandler',
            'filename':context.GLOBAL['logging'],
            'encoding':'utf-8',
            'formatter':'default_formatter',
        }
    if isTrue(context.GLOBAL.get('syslog', 'no')):
        address=context.GLOBAL.get('syslog_address') or '/dev/log'
        if ':' in address and not address.startswith('/'):
            host, port = address.rsplit(':', 1)
            address=(host, int(port))
        handlers['syslog_handler']={
            'class':'logging.handlers.SysLogHandler',
            'address':address,
            'facility':context.GLOBAL.get('syslog_facility') or 'mail',
            'formatter':'syslog_formatter',
        }
    if not handlers:
        # stdout is reserved for the policy protocol
        handlers['stream_handler']={
            'class':'logging.StreamHandler',
            'stream':'ext://sys.stderr' if stdio else 'ext://sys.stdout',
            'formatter':'default_formatter',
        }

    return {
        'version': 1,
        'disable_existing_loggers':False,
        'formatters':{
            'default_formatter':{
                'format':LOG_FORMAT,
            },
            'syslog_formatter':{
                'format':SYSLOG_FORMAT,
            },
        },
        'handlers':handlers,
        'loggers':{
            'spfPolicyd':{
                'handlers':list(handlers),
                'level':context.GLOBAL.get('log_level') or 'INFO',
                'propagate':False
            }
        }
    }


def configureLogging(context:Context, stdio:bool=True):
    """Applies the logging configuration, the startup is aborted if the
    diagnostics channel cannot be opened.
    """
    try:
        logging.config.dictConfig(loggingConfig(context, stdio=stdio))
    except (ValueError, TypeError, AttributeError, ImportError, OSError) as e:
        startupFailure(f'Unable to configure logging: {e}')
    logger.debug(f'Logging configured for {__name__}')


def startupFailure(message:str, exitCode:int=1):
    """Logs a fatal startup error through every severity and terminates.

    Args:
        message (str): reason of the failure
        exitCode (int, optional): process exit status. Defaults to 1.
    """
    fallback=logging.StreamHandler(sys.stderr)
    fallback.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fallback)
    for level in (logging.CRITICAL, logging.ERROR, logging.WARNING,
        logging.INFO, logging.DEBUG):
        logger.log(level, f'Fatal startup error: {message}')
    sys.exit(exitCode)



# Late-defined directives

## Creation of default context
context = Context()
