#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains the policy delegation protocol functionalities

- PolicyReader parses 'key=value' lines into one attribute dict per
  transaction, a blank line ending the transaction
- writeResponse emits one 'action=' line followed by a blank line
- serveStream and serveConnection run the read/decide/write loop over
  standard streams (stdin/stdout) or asyncio streams (TCP)
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
import asyncio



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')

## Constants
GARBAGE_LOG_LENGTH=100



# Classes

class PolicyReader:

    def __init__(self, verbose:bool=False):
        """Stateful reader accumulating the attributes of the current
        transaction.

        Args:
            verbose (bool, optional): logs every attribute. Defaults to False.
        """
        self.verbose=verbose
        self.attributes={}


    def feed(self, line:str):
        """Feeds one line of the stream.

        Args:
            line (str|bytes): line, with or without its line terminator.
                Undecodable bytes are replaced.

        Returns:
            dict: attributes of the finished transaction on a blank line,
                else None
        """
        if isinstance(line, bytes):
            line=line.decode('utf-8', errors='replace')
        line=line.rstrip('\r\n')

        if not line:
            attributes, self.attributes = self.attributes, {}
            return attributes

        if '=' in line:
            key, value = line.split('=', 1)
            self.attributes[key]=value
            if self.verbose:
                logger.info(f'Attribute: {key}={value}')
        else:
            logger.warning(
                f'ignoring garbage: {line[:GARBAGE_LOG_LENGTH]}')
        return None



# Functions

def readTransactions(stream, verbose:bool=False):
    """Generates the attribute dicts read from a text stream, ending cleanly
    at end of input.

    Args:
        stream: text or binary stream with a readline method
        verbose (bool, optional): logs every attribute. Defaults to False.

    Yields:
        dict: attributes of one transaction
    """
    reader=PolicyReader(verbose=verbose)
    while True:
        line=stream.readline()
        if not line:
            if reader.attributes:
                logger.info('End of input inside an unfinished transaction')
            return
        attributes=reader.feed(line)
        if attributes is not None:
            yield attributes


def formatResponse(action:str) -> str:
    return f'action={action}\n\n'


def writeResponse(stream, action:str):
    """Writes the response of one transaction and flushes it immediately,
    the MTA waits for it.

    Args:
        stream: text stream
        action (str): formatted action
    """
    stream.write(formatResponse(action))
    stream.flush()


def serveStream(engine, inStream, outStream):
    """Runs the policy loop over streams.

    Args:
        engine (DecisionEngine): decision engine
        inStream: input stream, binary (bytes lines are decoded leniently)
            or text
        outStream: output text stream

    Returns:
        int: number of transactions answered
    """
    count=0
    for attributes in readTransactions(inStream, verbose=engine.config.verbose):
        writeResponse(outStream, engine.process(attributes))
        count+=1
    logger.debug(f'End of input after {count} transactions')
    return count


async def serveConnection(engine, reader, writer):
    """Runs the policy loop over an asyncio connection. Decisions run in a
    worker thread since DNS lookups block.

    Args:
        engine (DecisionEngine): decision engine
        reader (asyncio.StreamReader): connection input
        writer (asyncio.StreamWriter): connection output
    """
    peer=writer.get_extra_info('peername')
    logger.debug(f'Connection from {peer}')
    policyReader=PolicyReader(verbose=engine.config.verbose)
    try:
        while True:
            line=await reader.readline()
            if not line:
                break
            attributes=policyReader.feed(line)
            if attributes is None:
                continue
            action=await asyncio.to_thread(engine.process, attributes)
            writer.write(formatResponse(action).encode('utf-8'))
            await writer.drain()
    except ConnectionError as e:
        logger.info(f'Connection from {peer} lost: {e!r}')
    finally:
        writer.close()
        logger.debug(f'Connection from {peer} closed')
