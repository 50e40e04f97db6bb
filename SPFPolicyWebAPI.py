#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This script starts a uvicorn server for the SPF policy inspection API.

It uses the defined configuration file.
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
import logging


# Other libs
import uvicorn


# Owned libs
from spfpolicyd.LibSPFServer import *
from spfpolicyd.LibSPFEngine import buildEngine
from spfpolicyd.LibSPFWebAPI import app, setEngine


# Module directives

## Creation of environment var for project
environ.setdefault('SPFPOLICYD_PATH', dirname(abspath(__file__)))
logger = logging.getLogger('spfPolicyd')


# Launcher

def main():
    try:
        context.loadConfig(environ.get('SPFPOLICYD_CONF', CONFIG_FILE))
    except (ConfigError, OSError) as e:
        startupFailure(f'Unable to load configuration: {e}')
    configureLogging(context, stdio=False)

    try:
        setEngine(buildEngine(context.freeze()))
    except ConfigError as e:
        startupFailure(str(e))

    logger.debug('Launching API server')
    uvicorn.run(
        app,
        host=context.WEB_API['host'],
        port=int(context.WEB_API['port']),
        reload=False,
    )


if __name__=="__main__":
    main()
