#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains the directives returned to the MTA

A directive is one of:
  > NoOpinion: the handler does not decide (DUNNO on the wire)
  > Accept: accept, optionally prepending a header (PREPEND or DUNNO)
  > Reject: permanent rejection with a reason (550)
  > Defer: deferral if the message would otherwise be accepted (DEFER_IF_PERMIT)

They are converted to the policy protocol grammar by formatAction only.
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from dataclasses import dataclass
from typing import Optional, Union
import re



# Owned libs

from spfpolicyd.LibSPFServer import ConfigError



# Module directives

## Control characters (CR, LF, NUL...) would split or truncate the action line
CONTROL_CHARACTERS=re.compile(r'[\x00-\x1f\x7f-\x9f]+')



# Classes

@dataclass(frozen=True)
class NoOpinion:
    pass


@dataclass(frozen=True)
class Accept:
    header: Optional[str] = None


@dataclass(frozen=True)
class Reject:
    reason: str


@dataclass(frozen=True)
class Defer:
    reason: str


## Raw action given as configured default (OK, REJECT ..., etc.)
@dataclass(frozen=True)
class Verbatim:
    action: str


Directive = Union[NoOpinion, Accept, Reject, Defer, Verbatim]

NO_OPINION = NoOpinion()



# Functions

def cleanText(text:str) -> str:
    """Removes trailing null characters left in resolver strings and turns
    the other control characters into spaces, keeping the text on one line.
    """
    return CONTROL_CHARACTERS.sub(' ', (text or '').rstrip('\x00'))


def formatAction(directive:Directive) -> str:
    """Formats a directive with the policy protocol grammar.

    Args:
        directive (Directive): directive to format

    Raises:
        TypeError: Not a directive

    Returns:
        str: the action value (without 'action=')
    """
    if isinstance(directive, NoOpinion):
        return 'DUNNO'
    if isinstance(directive, Accept):
        if directive.header:
            return f'PREPEND {cleanText(directive.header)}'
        return 'DUNNO'
    if isinstance(directive, Reject):
        return f'550 {cleanText(directive.reason)}'
    if isinstance(directive, Defer):
        return f'DEFER_IF_PERMIT SPF-Result={cleanText(directive.reason)}'
    if isinstance(directive, Verbatim):
        return cleanText(directive.action)
    raise TypeError(f'Not a directive: {directive!r}')


def parseDirective(action:str) -> Directive:
    """Converts a configured action into a directive.

    Args:
        action (str): configured action such as DUNNO, PREPEND ..., 550 ...

    Raises:
        ConfigError: Empty or multi-line action

    Returns:
        Directive: corresponding directive
    """
    action=(action or '').strip()
    if not action or '\n' in action:
        raise ConfigError(f'Bad default action {action!r}')

    verb, _, argument = action.partition(' ')
    if verb.upper() == 'DUNNO' and not argument:
        return NO_OPINION
    if verb.upper() == 'PREPEND' and argument:
        return Accept(header=argument)
    if verb == '550' and argument:
        return Reject(reason=argument)
    return Verbatim(action=action)
