#!/usr/bin/env python3
#- *- coding:utf-8 -*-
"""This module contains the per-message result cache

Postfix sends one policy request per recipient, all sharing the 'instance'
attribute of the message. The cache remembers the SPF results and whether
the Received-SPF header was already prepended for that instance.
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'



# Built-in

from collections import OrderedDict
from logging import getLogger
import threading, time



# Module directives

## Load logger
logger=getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')



# Classes

class CacheEntry:
    heloResult=None
    mailfromResult=None
    headerAdded=False

    def __init__(self, instance:str=None):
        """Results remembered for one message instance.

        Args:
            instance (str, optional): instance token. Defaults to None
                (throwaway entry).
        """
        self.instance=instance
        self.lock=threading.RLock()


    def claimHeader(self) -> bool:
        """Marks the header as added.

        Returns:
            bool: True only the first time for this entry
        """
        if self.headerAdded:
            return False
        self.headerAdded=True
        return True


    def __repr__(self):
        return (f'CacheEntry(instance={self.instance!r}, '
            f'helo={getattr(self.heloResult, "code", None)}, '
            f'mailfrom={getattr(self.mailfromResult, "code", None)}, '
            f'headerAdded={self.headerAdded})')


class ResultCache:

    def __init__(self, maxEntries:int=10000, ttl:float=3600, clock=time.monotonic):
        """LRU cache of CacheEntry keyed by instance token, entries older
        than ttl seconds being forgotten.

        Args:
            maxEntries (int, optional): capacity. Defaults to 10000.
            ttl (float, optional): lifetime of entries. Defaults to 3600.
            clock (callable, optional): time source. Defaults to time.monotonic.
        """
        if maxEntries < 1:
            raise ValueError('Cache capacity must be positive')
        self.maxEntries=maxEntries
        self.ttl=ttl
        self._clock=clock
        self._entries=OrderedDict()
        self._lock=threading.Lock()


    def getOrCreate(self, instance:str=None) -> CacheEntry:
        """Returns the entry of the instance, creating it when unknown or
        expired. Without instance, returns an unstored entry.

        Args:
            instance (str, optional): instance token. Defaults to None.

        Returns:
            CacheEntry: entry for the message
        """
        if not instance:
            return CacheEntry()

        with self._lock:
            now=self._clock()
            item=self._entries.get(instance)
            if item is not None:
                created, entry = item
                if now - created < self.ttl:
                    self._entries.move_to_end(instance)
                    return entry
                logger.debug(f'Cache entry for {instance} expired')
                del self._entries[instance]

            entry=CacheEntry(instance=instance)
            self._entries[instance]=(now, entry)
            while len(self._entries) > self.maxEntries:
                oldest, _ = self._entries.popitem(last=False)
                logger.debug(f'Cache entry for {oldest} evicted')
            return entry


    def __contains__(self, instance:str) -> bool:
        with self._lock:
            item=self._entries.get(instance)
            return item is not None and self._clock() - item[0] < self.ttl


    def __len__(self):
        with self._lock:
            return len(self._entries)


    def stats(self) -> dict:
        return {
            'entries': len(self),
            'max_entries': self.maxEntries,
            'ttl': self.ttl,
        }
