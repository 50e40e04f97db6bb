#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This script starts the SPF policy daemon

In stdio mode, it is spawned by Postfix (master.cf spawn service) and talks
on stdin/stdout. In tcp mode, it listens on the configured host & port.
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from os import environ
from os.path import dirname, abspath
import asyncio, functools, logging, sys



# Owned libs

from spfpolicyd.LibSPFServer import *
from spfpolicyd.LibSPFEngine import buildEngine
from spfpolicyd.LibSPFProtocol import serveStream, serveConnection



# Module directives

## Creation of environment var for project
environ.setdefault('SPFPOLICYD_PATH', dirname(abspath(__file__)))
logger = logging.getLogger('spfPolicyd')



# Functions

async def listen(engine, host:str, port:int):
    server=await asyncio.start_server(
        functools.partial(serveConnection, engine), host=host, port=port)
    logger.info(f'Policy daemon listening on {host}:{port}')
    async with server:
        await server.serve_forever()


def main():
    ## Configuration loading
    try:
        context.loadConfig(environ.get('SPFPOLICYD_CONF', CONFIG_FILE))
    except (ConfigError, OSError) as e:
        startupFailure(f'Unable to load configuration: {e}')

    mode=context.DAEMON.get('mode', 'stdio').lower()
    configureLogging(context, stdio=(mode == 'stdio'))

    try:
        engine=buildEngine(context.freeze())
    except ConfigError as e:
        startupFailure(str(e))

    logger.debug(f'Launching policy daemon in {mode} mode')
    if mode == 'stdio':
        ## Raw input: 8-bit attribute values must not stop the loop
        sys.stdout.reconfigure(errors='replace')
        serveStream(engine, sys.stdin.buffer, sys.stdout)
    elif mode == 'tcp':
        try:
            asyncio.run(listen(
                engine,
                host=context.DAEMON.get('host', '127.0.0.1'),
                port=int(context.DAEMON.get('port', 10023)),
            ))
        except KeyboardInterrupt:
            logger.info('Policy daemon stopped')
        except (OSError, ValueError) as e:
            startupFailure(f'Unable to listen: {e}')
    else:
        startupFailure(f'Unknown daemon mode {mode!r}')



# Launcher

if __name__=="__main__":
    main()
