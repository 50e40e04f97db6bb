#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains functions for the SPF policy inspection API

The API simulates a policy request to :
- Check which action the daemon would give to a transaction
- Get the state of the results cache
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



# Other libs

from fastapi import FastAPI, HTTPException



# Owned libs

from spfpolicyd.LibSPFServer import context
from spfpolicyd.LibSPFEngine import buildEngine



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')

## Definition of API
app = FastAPI()
engine = None



# Functions

def setEngine(newEngine):
    """Sets the decision engine used by the API."""
    global engine
    engine=newEngine


def getEngine():
    """Returns the decision engine, built from the loaded configuration at
    first use.
    """
    if engine is None:
        setEngine(buildEngine(context.freeze()))
    return engine



# API functions

@app.get("/")
async def root():
    """Only returns a welcoming message.
    Used for connection-testing sake.
    """
    return {
        "message": "Welcome to SPF policy daemon inspection API.",
        "help":"See '/docs' for API documentation",
        "version":__version__,
        "status":__status__
    }


@app.get("/check/")
def check(
    client_address: str = '',
    helo_name: str = '',
    sender: str = '',
    recipient: str = '',
    instance: str = ''):
    """Runs a transaction through the policy handlers.

    Args:
        client_address (str): SMTP client IP address
        helo_name (str): HELO/EHLO name
        sender (str): envelope sender (empty for null sender)
        recipient (str): envelope recipient
        instance (str): message instance token

    Raises:
        HTTPException (HTTP/400): No client address

    Returns:
        json: formatted with {"action", "attributes"}
    """
    if not client_address:
        raise HTTPException(
            status_code=400,
            detail="client_address is required."
        )
    attributes={
        'request': 'smtpd_access_policy',
        'protocol_state': 'RCPT',
        'client_address': client_address,
        'helo_name': helo_name,
        'sender': sender,
        'recipient': recipient,
    }
    if instance:
        attributes['instance']=instance

    logger.debug(f'Inspection request {attributes}')
    return {
        "action": getEngine().process(attributes),
        "attributes": attributes,
    }


@app.get("/cache/")
async def cacheStats():
    """Returns the statistics of the results cache."""
    return getEngine().cache.stats()
