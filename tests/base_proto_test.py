# python imports:
import contextlib
import logging
from pathlib import Path
import sys
from typing import Iterator, List, Optional as Opt, Tuple, Type
import unittest

if __name__=='__main__': # pragma: no cover
	sys.path.append ( str ( Path ( __file__ ).parent.parent.absolute() ) )

# smtp_intake imports:
import base_proto
from util import BYTES

logger = logging.getLogger ( __name__ )

@contextlib.contextmanager
def quiet_logging ( quiet: bool = True ) -> Iterator[None]:
	try:
		if quiet:
			logging.disable ( logging.CRITICAL )
		yield None
	finally:
		if quiet:
			logging.disable ( logging.NOTSET )


def IsSendData ( evt: base_proto.Event ) -> base_proto.SendDataEvent:
	assert isinstance ( evt, base_proto.SendDataEvent )
	return evt


class EchoRequest ( base_proto.BaseRequest ):
	def _server_protocol ( self, server: base_proto.ServerProtocol, prefix: str, suffix: str ) -> base_proto.RequestProtocolGenerator:
		yield base_proto.SendDataEvent ( f'{prefix}:{suffix}\n'.encode() )


class ReadOneRequest ( base_proto.BaseRequest ):
	# asks for one more line, then answers with it
	def _server_protocol ( self, server: base_proto.ServerProtocol, prefix: str, suffix: str ) -> base_proto.RequestProtocolGenerator:
		yield from ( event := base_proto.NeedDataEvent() ).go()
		raise base_proto.SendDataEvent ( b'got ' + ( event.data or b'' ) )


class BrokenRequest ( base_proto.BaseRequest ):
	def _server_protocol ( self, server: base_proto.ServerProtocol, prefix: str, suffix: str ) -> base_proto.RequestProtocolGenerator:
		yield from ()
		raise KeyError ( 'oops' )


class LineServer ( base_proto.ServerProtocol ):
	_MAXLINE = 42
	verbs = {
		'ECHO': EchoRequest,
		'READ': ReadOneRequest,
		'BREAK': BrokenRequest,
	}
	
	def _parse_request_line ( self, line: BYTES ) -> Tuple[str,Opt[Type[base_proto.BaseRequest]],str]:
		verb, _, suffix = bytes ( line ).decode().strip().partition ( ' ' )
		return verb, self.verbs.get ( verb ), suffix
	
	def _error_invalid_command ( self ) -> Opt[base_proto.Event]:
		return base_proto.SendDataEvent ( b'what?\n' )
	
	def _error_bad_sequence ( self, requestcls: Type[base_proto.BaseRequest] ) -> Opt[base_proto.Event]:
		return None


def chunks ( events: Iterator[base_proto.Event] ) -> List[bytes]:
	return [ b''.join ( IsSendData ( evt ).chunks ) for evt in events ]


class Tests ( unittest.TestCase ):
	def test_misc ( self ) -> None:
		test = self
		
		class BadRequest ( base_proto.BaseRequest ):
			def _server_protocol ( self, server: base_proto.ServerProtocol, prefix: str, suffix: str ) -> base_proto.RequestProtocolGenerator:
				return super()._server_protocol ( server, prefix, suffix )
		bad = BadRequest()
		with test.assertRaises ( NotImplementedError ):
			bad._server_protocol ( None, '', '' ) # type: ignore
		
		class BadProtocol ( base_proto.Protocol ):
			def _receive_line ( self, line: BYTES ) -> Iterator[base_proto.Event]:
				return super()._receive_line ( line )
		bp = BadProtocol ( False )
		with self.assertRaises ( NotImplementedError ):
			bp._receive_line ( b'' )
		
		class ServerProtocol ( base_proto.ServerProtocol ):
			def _parse_request_line ( self, line: BYTES ) -> Tuple[str,Opt[Type[base_proto.BaseRequest]],str]:
				return super()._parse_request_line ( line )
			
			def _error_invalid_command ( self ) -> Opt[base_proto.Event]:
				return super()._error_invalid_command()
			
			def _error_bad_sequence ( self, requestcls: Type[base_proto.BaseRequest] ) -> Opt[base_proto.Event]:
				return super()._error_bad_sequence ( requestcls )
		
		sp = ServerProtocol ( False, 'localhost' )
		self.assertEqual ( [], list ( sp.startup() ) )
		with self.assertRaises ( NotImplementedError ):
			sp._parse_request_line ( b'' )
		with self.assertRaises ( NotImplementedError ):
			sp._error_invalid_command()
		with self.assertRaises ( NotImplementedError ):
			sp._error_bad_sequence ( BadRequest )
		
		with self.assertRaises ( AssertionError ):
			ServerProtocol ( False, 'evil\r\nhost' )
	
	def test_split_reads ( self ) -> None:
		test = self
		
		class TestProtocol ( base_proto.Protocol ):
			_MAXLINE = 42
			def _receive_line ( self, line: BYTES ) -> Iterator[base_proto.Event]:
				if line:
					yield base_proto.SendDataEvent ( bytes ( line ) )
		tp = TestProtocol ( False )
		test.assertEqual ( chunks ( tp.receive ( b'foo\r' ) ), [] )
		test.assertEqual ( chunks ( tp.receive ( b'\nba' ) ), [ b'foo\r\n' ] )
		test.assertEqual ( chunks ( tp.receive ( b'ar\r\nbaz' ) ), [ b'baar\r\n' ] )
		test.assertEqual ( chunks ( tp.receive ( b'1\n2\n3\n' ) ), [ b'baz1\n', b'2\n', b'3\n' ] )
		test.assertEqual ( chunks ( tp.receive ( b'tail' ) ), [] )
		test.assertEqual ( chunks ( tp.receive ( b'' ) ), [ b'tail' ] ) # EOF flushes the partial line
		with test.assertRaises ( base_proto.Closed ):
			list ( tp.receive ( b'' ) )
		
		tp = TestProtocol ( False )
		with test.assertRaises ( base_proto.ProtocolError ):
			list ( tp.receive ( b'X' * tp._MAXLINE ) )
		
		tp = TestProtocol ( False )
		test.assertEqual ( chunks ( tp.receive ( b'X' * ( tp._MAXLINE - 2 ) + b'\n' ) ), [ b'X' * ( tp._MAXLINE - 2 ) + b'\n' ] )
	
	def test_server_dispatch ( self ) -> None:
		sp = LineServer ( False, 'localhost' )
		self.assertEqual ( chunks ( sp.receive ( b'ECHO hello\r\n' ) ), [ b'ECHO:hello\n' ] )
		self.assertEqual ( chunks ( sp.receive ( b'\r\n   \r\n' ) ), [] ) # blank lines are ignored
		self.assertEqual ( chunks ( sp.receive ( b'NOPE\r\n' ) ), [ b'what?\n' ] )
		
		# a request waiting on more data gets the next line, not the dispatcher
		self.assertEqual ( chunks ( sp.receive ( b'READ\r\n' ) ), [] )
		self.assertIsNotNone ( sp.need_data )
		self.assertEqual ( chunks ( sp.receive ( b'ECHO not a command\r\n' ) ), [ b'got ECHO not a command\r\n' ] )
		self.assertIsNone ( sp.request )
		self.assertIsNone ( sp.need_data )
	
	def test_internal_error ( self ) -> None:
		sp = LineServer ( False, 'localhost' )
		with self.assertRaises ( base_proto.Closed ):
			try:
				with quiet_logging():
					list ( sp.receive ( b'BREAK\r\n' ) )
			except base_proto.Closed as e:
				self.assertEqual ( repr ( e ), '''Closed("KeyError('oops')")''' )
				raise
		self.assertIsNone ( sp.request )
		self.assertIsNone ( sp.request_protocol )
	
	def test_exc_info_thrown_into_request ( self ) -> None:
		test = self
		seen: List[BaseException] = []
		
		class AskEvent ( base_proto.Event ):
			pass
		
		class AskRequest ( base_proto.BaseRequest ):
			def _server_protocol ( self, server: base_proto.ServerProtocol, prefix: str, suffix: str ) -> base_proto.RequestProtocolGenerator:
				try:
					yield AskEvent()
				except ValueError as e:
					seen.append ( e )
					yield base_proto.SendDataEvent ( b'recovered\n' )
		
		class AskServer ( LineServer ):
			verbs = { 'ASK': AskRequest }
		
		sp = AskServer ( False, 'localhost' )
		out: List[bytes] = []
		for event in sp.receive ( b'ASK\n' ):
			if isinstance ( event, AskEvent ):
				try:
					raise ValueError ( 'handler failed' )
				except ValueError:
					event.exc_info = sys.exc_info()
			else:
				out.append ( b''.join ( IsSendData ( event ).chunks ) )
		test.assertEqual ( out, [ b'recovered\n' ] )
		test.assertEqual ( [ repr ( e ) for e in seen ], [ "ValueError('handler failed')" ] )

if __name__ == '__main__':
	logging.basicConfig ( level = logging.DEBUG )
	unittest.main()
