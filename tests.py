"""Test module for SPF policy daemon:
   --------------------------------
Impements unit tests for:
- spfpolicyd.LibSPFServer
- spfpolicyd.LibSPFProtocol
- spfpolicyd.LibSPFCache
- spfpolicyd.LibSPFHandlers
- spfpolicyd.LibSPFEngine
- spfpolicyd.LibSPFResolver
- spfpolicyd.LibSPFWebAPI
"""
__author__='Charles Dubos'
__license__='GNUv3'
__credits__='Charles Dubos'
__version__="0.1.0"
__maintainer__='Charles Dubos'
__email__='charles.dubos@telecom-paris.fr'
__status__='Development'


# Built-in
import unittest
from dataclasses import replace
from io import BytesIO, StringIO
from unittest import mock
from os import environ, remove
from os.path import exists, join
from tempfile import gettempdir
import asyncio, ipaddress, logging.config, threading, time


# Other libs
from fastapi.testclient import TestClient
import dns.resolver
import spf


# Owned libs
from spfpolicyd.LibSPFServer import *
from spfpolicyd.LibSPFDirective import (NO_OPINION, Accept, Defer, Reject,
    Verbatim, cleanText, formatAction, parseDirective)
from spfpolicyd.LibSPFProtocol import (PolicyReader, readTransactions,
    serveConnection, serveStream, writeResponse)
from spfpolicyd.LibSPFCache import CacheEntry, ResultCache
from spfpolicyd.LibSPFHandlers import (LOCAL_ORIGIN_HEADER, RELAY_HEADER,
    LocalOriginExemption, RelayExemption, SPFHandler)
from spfpolicyd.LibSPFEngine import DecisionEngine, buildEngine
from spfpolicyd.LibSPFResolver import (SCOPE_HELO, SCOPE_MAILFROM, SPFRequest,
    SPFResolver, SPFResult)
import spfpolicyd.LibSPFWebAPI as webAPI


# Module directives
## Creation of environment var for project & configuration loading
environ['SPFPOLICYD_PATH'] = gettempdir()
CONFIG_TEST=join(gettempdir(), 'spfPolicydTest.conf')
if exists(CONFIG_TEST):
    remove(CONFIG_TEST)
context.loadConfig(CONFIG_TEST)
context.GLOBAL['logging']=join(gettempdir(), 'spfPolicydTest.log')
context.GLOBAL['log_level']='DEBUG'
context.GLOBAL['hostname']='mx.example.net'
context.POLICY['relay_addresses']='10.0.0.0/8, 2001:db8:ffff::/48'
CONFIG=context.freeze()
VERBOSE_CONFIG=replace(CONFIG, verbose=True)

## Creating specially-configured logger
logging.config.dictConfig(loggingConfig(context))
logger = logging.getLogger('spfPolicyd')
logger.debug(f'Logger loaded in {__name__}')


# Test helpers

def makeResult(code:str, scope:str) -> SPFResult:
    return SPFResult(
        code=code,
        localExplanation=f'local {scope} {code}',
        authorityExplanation=f'authority {scope}' if code == 'fail' else '',
        header=f'Received-SPF: {code} ({scope})',
    )


class FakeResolver:
    def __init__(self, helo='pass', mfrom='pass'):
        self.results={
            SCOPE_HELO: makeResult(helo, SCOPE_HELO),
            SCOPE_MAILFROM: makeResult(mfrom, SCOPE_MAILFROM),
        }
        self.requests=[]

    def check(self, request):
        self.requests.append(request)
        return self.results[request.scope]

    def scopes(self):
        return [request.scope for request in self.requests]


class FakeZone:
    """DNS answers given to pyspf from a dict of (name, rdtype) -> values."""
    def __init__(self, records:dict):
        self.records=records
        self.lookups=[]

    def __call__(self, name, qtype, strict=True, timeout=None):
        self.lookups.append((name, qtype))
        values=self.records.get((name.lower(), qtype), [])
        if values == 'TIMEOUT':
            raise spf.TempError(f'DNS {qtype} lookup of {name} timed out')
        for value in values:
            if qtype == 'TXT':
                value=(value.encode('utf-8'),)
            elif qtype == 'MX':
                value=(10, value)
            yield ((name, qtype), value)

    def patch(self):
        return mock.patch.object(spf, 'DNSLookup', self)


def attrs(client='192.0.2.1', helo='mail.example.com', sender='user@example.com',
    recipient='a@example.net', instance='A1', **extra):
    attributes={
        'request': 'smtpd_access_policy',
        'client_address': client,
        'helo_name': helo,
        'sender': sender,
        'recipient': recipient,
    }
    if instance is not None:
        attributes['instance']=instance
    attributes.update(extra)
    return attributes


def transaction(**kwargs) -> str:
    return ''.join(f'{key}={value}\n' for key, value in attrs(**kwargs).items()) + '\n'


def mfromRequest(sender='user@example.com', ip='192.0.2.1', helo='mail.example.com'):
    return SPFRequest.build(SCOPE_MAILFROM, sender, ip, heloIdentity=helo).request


# Tests classes

class tests_1_LibSPFServer(unittest.TestCase):

    def test_1_logger(self):
        """Verification of logging levels
        """
        logger.debug("Test DEBUG level")
        logger.info("Test INFO level")
        logger.warning("Test WARNING level")
        logger.error("Test ERROR level")
        logger.critical("Test CRITICAL level")

    def test_2_confLoad(self):
        """Verification of configuration loading
        """
        self.assertTrue(exists(CONFIG_TEST))
        self.assertEqual(CONFIG.defaultResponse, 'DUNNO')
        self.assertEqual(CONFIG.hostname, 'mx.example.net')
        self.assertEqual(CONFIG.lifetime, 20)
        self.assertEqual(CONFIG.cacheMaxEntries, 10000)
        self.assertFalse(CONFIG.verbose)
        self.assertIn('{scope}', CONFIG.authorityExplanation)
        self.assertIn(context.DAEMON['mode'], ('stdio', 'tcp'))

    def test_3_frozenConfig(self):
        """The configuration given to components cannot be modified
        """
        with self.assertRaises(Exception):
            CONFIG.verbose=True

    def test_4_addressSets(self):
        """Verification of the CIDR sets
        """
        self.assertIn('127.0.0.1', CONFIG.localAddresses)
        self.assertIn('::1', CONFIG.localAddresses)
        self.assertIn('::ffff:127.0.0.1', CONFIG.localAddresses)
        self.assertNotIn('192.0.2.1', CONFIG.localAddresses)
        self.assertIn('10.0.0.5', CONFIG.relayAddresses)
        self.assertIn('2001:db8:ffff::25', CONFIG.relayAddresses)
        self.assertNotIn('not an address', CONFIG.relayAddresses)
        self.assertNotIn('', CONFIG.relayAddresses)
        self.assertEqual(len(AddressSet.fromString(' , ')), 0)

    def test_5_badConfig(self):
        """Malformed values raise ConfigError
        """
        self.assertRaises(ConfigError, AddressSet.fromString, '10.0.0.0/33')
        badContext=Context()
        for section in Context.contexts:
            setattr(badContext, section, dict(getattr(context, section)))
        badContext.CACHE['max_entries']='many'
        self.assertRaises(ConfigError, badContext.freeze)
        del badContext.CACHE['max_entries']
        self.assertRaises(ConfigError, badContext.freeze)

    def test_6_loggingConfig(self):
        """The diagnostics channel never uses stdout in stdio mode
        """
        noLogContext=Context()
        noLogContext.GLOBAL={'logging': '', 'log_level': 'INFO', 'syslog': 'no'}
        config=loggingConfig(noLogContext, stdio=True)
        self.assertEqual(
            config['handlers']['stream_handler']['stream'], 'ext://sys.stderr')

        noLogContext.GLOBAL.update(syslog='yes', syslog_address='localhost:514')
        config=loggingConfig(noLogContext)
        self.assertEqual(
            config['handlers']['syslog_handler']['address'], ('localhost', 514))
        self.assertEqual(
            config['handlers']['syslog_handler']['facility'], 'mail')
        self.assertNotIn('stream_handler', config['handlers'])

    def test_7_startupFailure(self):
        """A fatal startup error terminates the process
        """
        with self.assertLogs('spfPolicyd', level='DEBUG') as logs:
            with self.assertRaises(SystemExit) as exit:
                startupFailure('syslog unavailable')
        self.assertEqual(exit.exception.code, 1)
        levels={record.levelname for record in logs.records}
        self.assertTrue({'CRITICAL', 'ERROR', 'WARNING'} <= levels)
        for handler in list(logger.handlers):
            if isinstance(handler, logging.StreamHandler) \
                and not isinstance(handler, logging.FileHandler):
                logger.removeHandler(handler)


class tests_2_directives(unittest.TestCase):

    def test_1_format(self):
        """Verification of the response grammar
        """
        self.assertEqual(formatAction(NO_OPINION), 'DUNNO')
        self.assertEqual(formatAction(Accept()), 'DUNNO')
        self.assertEqual(
            formatAction(Accept(header='X-Comment: hello')), 'PREPEND X-Comment: hello')
        self.assertEqual(formatAction(Reject(reason='Forbidden\x00\x00')), '550 Forbidden')
        self.assertEqual(
            formatAction(Defer(reason='DNS timeout')),
            'DEFER_IF_PERMIT SPF-Result=DNS timeout')
        self.assertRaises(TypeError, formatAction, 'DUNNO')

    def test_2_parseDefault(self):
        """Verification of the configured default responses
        """
        self.assertEqual(parseDirective('DUNNO'), NO_OPINION)
        self.assertEqual(parseDirective('PREPEND X-A: b'), Accept(header='X-A: b'))
        self.assertEqual(parseDirective('550 No'), Reject(reason='No'))
        self.assertEqual(parseDirective('OK'), Verbatim(action='OK'))
        self.assertRaises(ConfigError, parseDirective, '')
        self.assertRaises(ConfigError, parseDirective, 'DUNNO\nOK')

    def test_3_controlCharacters(self):
        """Reasons and headers always fit on the action line
        """
        self.assertEqual(cleanText('go away\r\nfoo=bar\x00'), 'go away foo=bar')
        self.assertEqual(cleanText('a\tb\x7fc\x85d'), 'a b c d')
        self.assertEqual(cleanText(None), '')
        self.assertEqual(
            formatAction(Reject(reason='go away\nfoo=bar')), '550 go away foo=bar')
        self.assertEqual(
            formatAction(Defer(reason='later\n\naction=OK')),
            'DEFER_IF_PERMIT SPF-Result=later action=OK')
        self.assertEqual(
            formatAction(Accept(header='Received-SPF: pass\r\nX-Forged: yes')),
            'PREPEND Received-SPF: pass X-Forged: yes')


class tests_3_protocol(unittest.TestCase):

    def test_1_reader(self):
        """Attributes are only given on the blank line
        """
        reader=PolicyReader()
        self.assertIsNone(reader.feed('client_address=192.0.2.1\n'))
        self.assertIsNone(reader.feed('ccert_subject=CN=a=b\n'))
        self.assertEqual(
            reader.feed('\n'),
            {'client_address': '192.0.2.1', 'ccert_subject': 'CN=a=b'})
        self.assertEqual(reader.attributes, {})

    def test_2_garbage(self):
        """A malformed line does not corrupt the transactions around it
        """
        stream=StringIO(
            'sender=a@example.com\n\n'
            'this line is garbage\n'
            'sender=b@example.com\n\n')
        with self.assertLogs('spfPolicyd', level='WARNING') as logs:
            transactions=list(readTransactions(stream))
        self.assertEqual(
            transactions, [{'sender': 'a@example.com'}, {'sender': 'b@example.com'}])
        self.assertIn('ignoring garbage: this line is garbage', logs.output[0])

    def test_3_endOfInput(self):
        """End of input ends the loop without evaluating an unfinished block
        """
        stream=StringIO('sender=a@example.com\n\nsender=b@example.com\n')
        self.assertEqual(list(readTransactions(stream)), [{'sender': 'a@example.com'}])
        self.assertEqual(list(readTransactions(StringIO(''))), [])

    def test_4_verbose(self):
        """Verbose mode dumps every attribute
        """
        with self.assertLogs('spfPolicyd', level='INFO') as logs:
            list(readTransactions(StringIO('helo_name=mail.example.com\n\n'),
                verbose=True))
        self.assertTrue(any(
            'Attribute: helo_name=mail.example.com' in line for line in logs.output))

    def test_5_writeResponse(self):
        """The response is terminated by a blank line and flushed
        """
        class Output(StringIO):
            flushed=0
            def flush(self):
                self.flushed+=1
                super().flush()
        output=Output()
        writeResponse(output, 'DUNNO')
        self.assertEqual(output.getvalue(), 'action=DUNNO\n\n')
        self.assertEqual(output.flushed, 1)

    def test_6_undecodableInput(self):
        """8-bit attribute values are answered like any other transaction
        """
        reader=PolicyReader()
        reader.feed(b'sender=\xff@example.com\r\n')
        self.assertEqual(reader.feed(b'\n'), {'sender': '\ufffd@example.com'})

        engine=buildEngine(CONFIG, resolver=FakeResolver())
        stream=BytesIO(
            transaction(instance='Y').encode('utf-8')
            + b'client_address=192.0.2.1\nhelo_name=mail.example.com\n'
            b'sender=\xff@example.com\ninstance=Z\n\n')
        output=StringIO()
        self.assertEqual(serveStream(engine, stream, output), 2)
        self.assertEqual(
            output.getvalue(),
            'action=PREPEND Received-SPF: pass (mfrom)\n\n' * 2)

    def test_7_hostileExplanation(self):
        """A published explanation cannot add lines to the response
        """
        zone=FakeZone({
            ('example.com', 'TXT'): ['v=spf1 -all exp=why.example.com'],
            ('why.example.com', 'TXT'): ['go away\nfoo=bar'],
        })
        engine=buildEngine(CONFIG, resolver=SPFResolver(CONFIG))
        output=StringIO()
        with zone.patch():
            serveStream(engine, StringIO(transaction(instance='H1')), output)
        self.assertEqual(output.getvalue(), 'action=550 go away foo=bar\n\n')


class tests_4_cache(unittest.TestCase):

    def test_1_sameInstance(self):
        """The same entry is returned for an instance
        """
        cache=ResultCache()
        entry=cache.getOrCreate('A1')
        self.assertIs(cache.getOrCreate('A1'), entry)
        self.assertIsNot(cache.getOrCreate('A2'), entry)
        self.assertIn('A1', cache)
        self.assertEqual(len(cache), 2)

    def test_2_noInstance(self):
        """Without instance, a throwaway entry is given
        """
        cache=ResultCache()
        entry=cache.getOrCreate(None)
        self.assertIsNot(cache.getOrCreate(''), entry)
        self.assertEqual(len(cache), 0)

    def test_3_capacity(self):
        """Least recently used instances are evicted
        """
        cache=ResultCache(maxEntries=2)
        first=cache.getOrCreate('A1')
        cache.getOrCreate('A2')
        cache.getOrCreate('A1')
        cache.getOrCreate('A3')
        self.assertIn('A1', cache)
        self.assertNotIn('A2', cache)
        self.assertIs(cache.getOrCreate('A1'), first)
        self.assertRaises(ValueError, ResultCache, 0)

    def test_4_ttl(self):
        """Expired instances are forgotten
        """
        now=[1000.0]
        cache=ResultCache(ttl=60, clock=lambda: now[0])
        entry=cache.getOrCreate('A1')
        ## creation time is only kept by the cache
        self.assertFalse(hasattr(entry, 'created'))
        now[0]+=59
        self.assertIs(cache.getOrCreate('A1'), entry)
        now[0]+=61
        self.assertNotIn('A1', cache)
        self.assertIsNot(cache.getOrCreate('A1'), entry)

    def test_5_header(self):
        """The header can only be claimed once per entry
        """
        entry=CacheEntry('A1')
        self.assertTrue(entry.claimHeader())
        self.assertFalse(entry.claimHeader())
        self.assertTrue(CacheEntry('A2').claimHeader())


class tests_5_handlers(unittest.TestCase):

    def test_1_exemptions(self):
        """Exemptions only answer for their networks
        """
        local=LocalOriginExemption(CONFIG.localAddresses)
        relay=RelayExemption(CONFIG.relayAddresses)
        self.assertEqual(
            local.evaluate(attrs(client='127.0.0.1'), None),
            Accept(header=LOCAL_ORIGIN_HEADER))
        self.assertEqual(local.evaluate(attrs(client=''), None), NO_OPINION)
        self.assertEqual(local.evaluate(attrs(client='garbage'), None), NO_OPINION)
        self.assertEqual(
            relay.evaluate(attrs(client='10.0.0.5'), None),
            Accept(header=RELAY_HEADER))
        self.assertEqual(relay.evaluate(attrs(client='192.0.2.1'), None), NO_OPINION)

    def test_2_heloFail(self):
        """A HELO fail rejects without checking the sender
        """
        resolver=FakeResolver(helo='fail')
        resolver.results[SCOPE_HELO]=replace(
            resolver.results[SCOPE_HELO], authorityExplanation='Forbidden\x00')
        directive=SPFHandler(resolver).evaluate(attrs(), CacheEntry('A1'))
        self.assertEqual(directive, Reject(reason='Forbidden'))
        self.assertEqual(formatAction(directive), '550 Forbidden')
        self.assertEqual(resolver.scopes(), [SCOPE_HELO])

    def test_3_heloTemperror(self):
        """A HELO temperror defers with the local explanation
        """
        resolver=FakeResolver(helo='temperror')
        directive=SPFHandler(resolver).evaluate(attrs(sender=''), CacheEntry('A1'))
        self.assertEqual(directive, Defer(reason='local helo temperror'))
        self.assertEqual(resolver.scopes(), [SCOPE_HELO])

    def test_4_nullSender(self):
        """A null sender only gets the HELO header, once per instance
        """
        for code in ('pass', 'softfail', 'neutral', 'none', 'permerror'):
            resolver=FakeResolver(helo=code)
            handler=SPFHandler(resolver)
            entry=CacheEntry('A1')
            self.assertEqual(
                handler.evaluate(attrs(sender='', recipient='a@x'), entry),
                Accept(header=f'Received-SPF: {code} (helo)'))
            self.assertEqual(
                handler.evaluate(attrs(sender='', recipient='b@x'), entry),
                NO_OPINION)
            self.assertEqual(resolver.scopes(), [SCOPE_HELO])

    def test_5_mailfrom(self):
        """The sender result decides when HELO does not fail
        """
        expected={
            'fail': Reject(reason='authority mfrom'),
            'temperror': Defer(reason='local mfrom temperror'),
            'softfail': Accept(header='Received-SPF: softfail (mfrom)'),
            'pass': Accept(header='Received-SPF: pass (mfrom)'),
            'none': Accept(header='Received-SPF: none (mfrom)'),
            'permerror': Accept(header='Received-SPF: permerror (mfrom)'),
        }
        for heloCode in ('pass', 'softfail', 'neutral', 'none', 'permerror'):
            for code, directive in expected.items():
                resolver=FakeResolver(helo=heloCode, mfrom=code)
                self.assertEqual(
                    SPFHandler(resolver).evaluate(attrs(), CacheEntry('A1')),
                    directive)
                self.assertEqual(resolver.scopes(), [SCOPE_HELO, SCOPE_MAILFROM])

    def test_6_mailfromOnce(self):
        """The sender header is given once and results are cached
        """
        resolver=FakeResolver(mfrom='softfail')
        handler=SPFHandler(resolver)
        entry=CacheEntry('A1')
        self.assertIsInstance(handler.evaluate(attrs(recipient='a@x'), entry), Accept)
        self.assertEqual(handler.evaluate(attrs(recipient='b@x'), entry), NO_OPINION)
        self.assertEqual(len(resolver.requests), 2)
        request=resolver.requests[1]
        self.assertEqual(request.identity, 'user@example.com')
        self.assertEqual(request.heloIdentity, 'mail.example.com')
        self.assertEqual(str(request.ip), '192.0.2.1')

    def test_7_badRequest(self):
        """Invalid identities give no opinion and are logged
        """
        resolver=FakeResolver()
        handler=SPFHandler(resolver)
        with self.assertLogs('spfPolicyd', level='INFO') as logs:
            self.assertEqual(
                handler.evaluate(attrs(helo='[192.0.2.1]'), CacheEntry()), NO_OPINION)
            self.assertEqual(
                handler.evaluate(attrs(client='999.1.1.1'), CacheEntry()), NO_OPINION)
            self.assertEqual(
                handler.evaluate(attrs(sender='user@bad..domain'), CacheEntry()),
                NO_OPINION)
        self.assertEqual(resolver.scopes(), [SCOPE_HELO])
        self.assertTrue(all('Unable to create SPF request' in line
            for line in logs.output))

    def test_8_idempotence(self):
        """Same attributes with a fresh cache give the same directive
        """
        handler=SPFHandler(FakeResolver(mfrom='neutral'))
        self.assertEqual(
            handler.evaluate(attrs(), CacheEntry('A1')),
            handler.evaluate(attrs(), CacheEntry('A1')))


class tests_6_engine(unittest.TestCase):

    def setUp(self):
        self.resolver=FakeResolver()
        self.engine=buildEngine(CONFIG, resolver=self.resolver)

    def test_1_localOrigin(self):
        """Local connections never reach the SPF handler
        """
        self.resolver.results[SCOPE_HELO]=makeResult('fail', SCOPE_HELO)
        self.assertEqual(
            self.engine.process(attrs(client='127.0.0.1')),
            f'PREPEND {LOCAL_ORIGIN_HEADER}')
        self.assertEqual(self.resolver.requests, [])

    def test_2_relay(self):
        """Trusted relays never reach the SPF handler
        """
        self.assertEqual(
            self.engine.process(attrs(client='10.0.0.5')),
            'PREPEND X-Comment: SPF skipped for whitelisted relay - skipped check')
        self.assertEqual(self.resolver.requests, [])

    def test_3_multiRecipient(self):
        """Null sender message with two recipients gets one header
        """
        stream=StringIO(
            transaction(sender='', recipient='a@x', instance='A1')
            + transaction(sender='', recipient='b@x', instance='A1'))
        output=StringIO()
        self.assertEqual(serveStream(self.engine, stream, output), 2)
        self.assertEqual(
            output.getvalue(),
            'action=PREPEND Received-SPF: pass (helo)\n\naction=DUNNO\n\n')
        self.assertEqual(len(self.resolver.requests), 1)

    def test_4_heloFail(self):
        """HELO fail scenario
        """
        self.resolver.results[SCOPE_HELO]=replace(
            makeResult('fail', SCOPE_HELO), authorityExplanation='Forbidden')
        self.assertEqual(self.engine.process(attrs()), '550 Forbidden')
        self.assertEqual(self.resolver.scopes(), [SCOPE_HELO])

    def test_5_senderHeader(self):
        """The sender header is given, not the HELO one
        """
        self.resolver.results[SCOPE_MAILFROM]=makeResult('softfail', SCOPE_MAILFROM)
        self.assertEqual(
            self.engine.process(attrs()), 'PREPEND Received-SPF: softfail (mfrom)')

    def test_6_default(self):
        """Without decisive handler, the default response is given
        """
        self.assertEqual(self.engine.process(attrs(helo='')), 'DUNNO')
        engine=DecisionEngine(
            replace(CONFIG, defaultResponse='OK'), [], ResultCache())
        self.assertEqual(engine.process(attrs()), 'OK')

    def test_7_failingHandler(self):
        """A failing handler is logged and skipped
        """
        class Broken(LocalOriginExemption):
            name='broken'
            def evaluate(self, attributes, entry):
                raise RuntimeError('boom')
        engine=DecisionEngine(
            CONFIG,
            [Broken(CONFIG.localAddresses), SPFHandler(self.resolver)],
            ResultCache())
        with self.assertLogs('spfPolicyd', level='ERROR'):
            self.assertEqual(
                engine.process(attrs()), 'PREPEND Received-SPF: pass (mfrom)')

    def test_8_verbose(self):
        """Verbose mode logs every handler decision
        """
        engine=buildEngine(VERBOSE_CONFIG, resolver=self.resolver)
        with self.assertLogs('spfPolicyd', level='INFO') as logs:
            engine.process(attrs(queue_id='4ABC'))
        output='\n'.join(logs.output)
        self.assertIn('handler exempt_localhost: DUNNO', output)
        self.assertIn('handler sender_policy_framework: PREPEND', output)
        self.assertIn('4ABC: SPF pass: HELO/EHLO: mail.example.com', output)
        self.assertIn('Policy action=PREPEND Received-SPF: pass (mfrom)', output)

    def test_9_concurrentInstance(self):
        """Concurrent requests of an instance evaluate it once
        """
        class SlowResolver(FakeResolver):
            def check(self, request):
                time.sleep(0.01)
                return super().check(request)
        resolver=SlowResolver()
        engine=buildEngine(CONFIG, resolver=resolver)
        actions=[]
        def worker(recipient):
            actions.append(engine.process(attrs(sender='', recipient=recipient)))
        threads=[threading.Thread(target=worker, args=(f'r{n}@x',)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(sorted(actions).count('DUNNO'), 4)
        self.assertEqual(len(resolver.requests), 1)

    def test_10_asyncConnection(self):
        """The TCP loop answers each transaction of a connection
        """
        class Writer:
            def __init__(self):
                self.data=b''
                self.closed=False
            def write(self, data):
                self.data+=data
            async def drain(self):
                pass
            def close(self):
                self.closed=True
            def get_extra_info(self, name):
                return ('127.0.0.1', 4242)

        writer=Writer()
        async def run():
            reader=asyncio.StreamReader()
            reader.feed_data(transaction(client='127.0.0.1').encode())
            reader.feed_data(b'garbage\n' + transaction(helo='').encode())
            reader.feed_eof()
            await serveConnection(self.engine, reader, writer)
        asyncio.run(run())
        self.assertEqual(
            writer.data.decode(),
            f'action=PREPEND {LOCAL_ORIGIN_HEADER}\n\naction=DUNNO\n\n')
        self.assertTrue(writer.closed)


class tests_7_resolver(unittest.TestCase):

    RECORDS={
        ('example.com', 'TXT'): ['v=spf1 ip4:192.0.2.0/24 include:_spf.example.org -all'],
        ('_spf.example.org', 'TXT'): ['some other text', 'v=spf1 ip4:203.0.113.0/24 ~all'],
        ('redirect.example.com', 'TXT'): ['v=spf1 redirect=_spf.example.org'],
        ('amx.example.com', 'TXT'): ['v=spf1 a mx/24 -all'],
        ('amx.example.com', 'A'): ['192.0.2.10'],
        ('amx.example.com', 'MX'): ['mail.amx.example.com'],
        ('mail.amx.example.com', 'A'): ['198.51.100.1'],
        ('exp.example.com', 'TXT'): ['v=spf1 -all exp=explain.%{d}'],
        ('explain.exp.example.com', 'TXT'): [
            "%{i} is not one of %{d}'s designated mail servers."],
        ('twice.example.com', 'TXT'): ['v=spf1 -all', 'v=spf1 +all'],
        ('broken.example.com', 'TXT'): ['v=spf1 foo:bar -all'],
        ('timeout.example.com', 'TXT'): 'TIMEOUT',
        ('v6.example.com', 'TXT'): ['v=spf1 ip6:2001:db8::/32 -all'],
        ('mail.example.com', 'TXT'): ['v=spf1 a -all'],
        ('mail.example.com', 'A'): ['192.0.2.1'],
    }

    def setUp(self):
        self.resolver=SPFResolver(CONFIG)
        self.zone=FakeZone(dict(self.RECORDS))
        patcher=self.zone.patch()
        patcher.start()
        self.addCleanup(patcher.stop)

    def check(self, sender, ip):
        return self.resolver.check(mfromRequest(sender=sender, ip=ip))

    def test_1_requestBuild(self):
        """Verification of request validation
        """
        request, error = SPFRequest.build(SCOPE_MAILFROM, 'bob', '::ffff:192.0.2.1')
        self.assertIsNone(error)
        self.assertEqual(request.sender, 'postmaster@bob')
        self.assertEqual(request.ip, ipaddress.ip_address('192.0.2.1'))
        self.assertEqual(
            SPFRequest.build(SCOPE_MAILFROM, '@example.com', '192.0.2.1').request.sender,
            'postmaster@example.com')
        self.assertIsNotNone(SPFRequest.build(SCOPE_MAILFROM, '', '192.0.2.1').error)
        self.assertIsNotNone(SPFRequest.build(SCOPE_HELO, '[192.0.2.1]', '192.0.2.1').error)
        self.assertIsNotNone(SPFRequest.build(SCOPE_HELO, 'mail.example.com', '').error)
        self.assertIsNotNone(SPFRequest.build('pra', 'mail.example.com', '192.0.2.1').error)

    def test_2_pass(self):
        """Match gives pass and a Received-SPF header
        """
        result=self.check('user@example.com', '192.0.2.1')
        self.assertEqual(result.code, 'pass')
        self.assertEqual(result.authorityExplanation, '')
        self.assertEqual(
            result.localExplanation,
            'domain of example.com designates 192.0.2.1 as permitted sender')
        self.assertTrue(result.header.startswith(
            'Received-SPF: Pass (mx.example.net: domain of example.com '
            'designates 192.0.2.1 as permitted sender) client-ip=192.0.2.1; '
            'envelope-from="user@example.com"; helo=mail.example.com; '
            'receiver=mx.example.net;'))
        self.assertTrue(result.header.endswith('identity=mailfrom'))
        self.assertEqual(self.check('user@example.com', '203.0.113.5').code, 'pass')

    def test_3_failDefaultExplanation(self):
        """fail without exp uses the configured explanation
        """
        result=self.check('user@example.com', '198.51.100.7')
        self.assertEqual(result.code, 'fail')
        self.assertEqual(
            result.localExplanation,
            'domain of example.com does not designate 198.51.100.7 '
            'as permitted sender')
        self.assertEqual(
            result.authorityExplanation,
            'Please see https://www.open-spf.org/Why?s=mfrom;id=user@example.com;'
            'ip=198.51.100.7;r=mx.example.net')

    def test_4_failPublishedExplanation(self):
        """fail uses the exp text published by the domain
        """
        result=self.check('user@exp.example.com', '198.51.100.7')
        self.assertEqual(result.code, 'fail')
        self.assertEqual(
            result.authorityExplanation,
            "198.51.100.7 is not one of exp.example.com's designated mail servers.")

    def test_5_mechanisms(self):
        """Records are evaluated through redirect, a, mx and ip6
        """
        self.assertEqual(self.check('user@redirect.example.com', '198.51.100.7').code,
            'softfail')
        self.assertEqual(self.check('user@amx.example.com', '192.0.2.10').code, 'pass')
        self.assertEqual(self.check('user@amx.example.com', '198.51.100.77').code, 'pass')
        self.assertEqual(self.check('user@amx.example.com', '192.0.2.11').code, 'fail')
        self.assertEqual(self.check('user@v6.example.com', '2001:db8::25').code, 'pass')
        self.assertEqual(self.check('user@v6.example.com', '192.0.2.1').code, 'fail')

    def test_6_errors(self):
        """none, permerror and temperror results
        """
        result=self.check('user@unknown.example.com', '192.0.2.1')
        self.assertEqual(result.code, 'none')
        self.assertEqual(result.authorityExplanation, '')
        self.assertEqual(self.check('user@twice.example.com', '192.0.2.1').code,
            'permerror')
        self.assertEqual(self.check('user@broken.example.com', '192.0.2.1').code,
            'permerror')
        result=self.check('user@timeout.example.com', '192.0.2.1')
        self.assertEqual(result.code, 'temperror')
        self.assertEqual(
            result.localExplanation,
            'temporary error in processing during lookup of timeout.example.com')
        self.assertTrue(result.header.startswith('Received-SPF: TempError'))

    def test_7_helo(self):
        """HELO scope checks the HELO domain
        """
        request=SPFRequest.build(
            SCOPE_HELO, 'mail.example.com', '192.0.2.1', 'mail.example.com').request
        result=self.resolver.check(request)
        self.assertEqual(result.code, 'pass')
        self.assertTrue(result.header.endswith('identity=helo'))
        self.assertNotIn('envelope-from', result.header)

    def test_8_quotedSender(self):
        """Quotes of the sender are escaped in the header
        """
        result=self.check('"a\\"b"@example.com', '192.0.2.1')
        self.assertIn('envelope-from="\\"a\\\\\\"b\\"@example.com";', result.header)
        self.assertEqual(result.header.count('\n'), 0)

    def test_9_resolverFailure(self):
        """A DNS failure outside pyspf gives temperror
        """
        def failing(name, qtype, strict=True, timeout=None):
            raise dns.resolver.NoResolverConfiguration('no nameservers')
        with mock.patch.object(spf, 'DNSLookup', failing):
            result=self.check('user@example.com', '192.0.2.1')
        self.assertEqual(result.code, 'temperror')

    def test_10_badTemplate(self):
        """The explanation template is checked at startup
        """
        self.assertRaises(ConfigError, SPFResolver,
            replace(CONFIG, authorityExplanation='See {unknown}'))


class tests_8_webAPI(unittest.TestCase):

    def setUp(self):
        self.resolver=FakeResolver(mfrom='neutral')
        webAPI.setEngine(buildEngine(CONFIG, resolver=self.resolver))
        self.client=TestClient(webAPI.app)

    def tearDown(self):
        webAPI.setEngine(None)

    def test_1_root(self):
        """Verification of the welcoming message
        """
        response=self.client.get('/')
        self.assertEqual(response.status_code, 200)
        self.assertIn('version', response.json())

    def test_2_check(self):
        """Transactions are checked through the engine
        """
        response=self.client.get('/check/', params={
            'client_address': '192.0.2.1',
            'helo_name': 'mail.example.com',
            'sender': 'user@example.com',
            'recipient': 'a@example.net',
            'instance': 'W1',
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['action'], 'PREPEND Received-SPF: neutral (mfrom)')
        self.assertEqual(response.json()['attributes']['instance'], 'W1')

        response=self.client.get('/check/', params={'client_address': '127.0.0.1'})
        self.assertEqual(response.json()['action'], f'PREPEND {LOCAL_ORIGIN_HEADER}')

    def test_3_missingAddress(self):
        """A client address is required
        """
        self.assertEqual(self.client.get('/check/').status_code, 400)

    def test_4_cache(self):
        """Verification of the cache statistics
        """
        self.client.get('/check/', params={
            'client_address': '192.0.2.1', 'helo_name': 'mail.example.com',
            'instance': 'W2'})
        stats=self.client.get('/cache/').json()
        self.assertEqual(stats['entries'], 1)
        self.assertEqual(stats['max_entries'], CONFIG.cacheMaxEntries)


if __name__ == "__main__":

    unittest.main(exit=False)
