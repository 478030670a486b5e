from __future__ import annotations

# python imports:
from abc import ABCMeta, abstractmethod
import logging
import re
from types import TracebackType
from typing import (
	Generator, Iterator, Optional as Opt, Sequence as Seq, Tuple, Type, Union,
)

# smtp_intake imports:
from util import bytes_types, BYTES

logger = logging.getLogger ( __name__ )

EXC_INFO = Opt[Union[
	Tuple[Type[BaseException],BaseException,TracebackType],
	Tuple[None,None,None],
]]

_r_eol = re.compile ( r'[\r\n]' )


class Event ( Exception ):
	exc_info: EXC_INFO = None
	
	def go ( self ) -> Iterator[Event]:
		yield self
	
	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}()'


class Closed ( Exception ):
	def __init__ ( self, reason: str = '' ) -> None:
		super().__init__ ( reason or '(none given)' )


class ProtocolError ( Exception ):
	pass


RequestProtocolGenerator = Generator[Event,None,None]


class BaseRequest ( metaclass = ABCMeta ):
	# this class is the basis of all server command handling
	# 1) server bypasses __init__() and constructs requests from the wire
	# 2) _server_protocol() implements the per-command state machine
	
	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}()'
	
	@abstractmethod
	def _server_protocol ( self, server: ServerProtocol, prefix: str, suffix: str ) -> RequestProtocolGenerator:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._server_protocol()' )


class NeedDataEvent ( Event ):
	data: Opt[bytes] = None
	
	def reset ( self ) -> NeedDataEvent:
		self.data = None
		return self
	
	def go ( self ) -> Iterator[Event]:
		self.reset()
		yield from super().go()


class SendDataEvent ( Event ):
	
	def __init__ ( self, *chunks: bytes ) -> None:
		self.chunks: Seq[bytes] = chunks
	
	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(chunks={self.chunks!r})'


class Protocol ( metaclass = ABCMeta ):
	_buf: bytes = b''
	request: Opt[BaseRequest] = None
	request_protocol: Opt[Generator[Event,None,None]] = None
	need_data: Opt[NeedDataEvent] = None
	tls: bool # whether or not the connection is currently encrypted
	_MAXLINE: int
	
	def __init__ ( self, tls: bool ) -> None:
		self.tls = tls
	
	def receive ( self, data: bytes ) -> Iterator[Event]:
		# bytes are buffered across calls and only complete lines are dispatched,
		# so a line split over two reads is still seen as one line
		assert isinstance ( data, bytes_types ), f'invalid {data=}'
		if not data: # EOF indicator
			if self._buf:
				buf, self._buf = self._buf, b''
				yield from self._receive_line ( buf )
				return
			raise Closed ( 'EOF' )
		self._buf += data
		start = 0
		end = 0
		try:
			while ( end := ( self._buf.find ( b'\n', start ) + 1 ) ):
				line = memoryview ( self._buf )[start:end]
				start = end
				yield from self._receive_line ( line )
		finally:
			if start:
				self._buf = self._buf[start:]
		if len ( self._buf ) >= self._MAXLINE and self._line_limited():
			raise ProtocolError ( 'maximum line length exceeded' )
	
	def _line_limited ( self ) -> bool:
		# override to lift _MAXLINE while the peer is sending payload lines
		return True
	
	@abstractmethod
	def _receive_line ( self, line: BYTES ) -> Iterator[Event]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._receive_line()' )
	
	def _run_protocol ( self ) -> Iterator[Event]:
		log = logger.getChild ( 'Protocol._run_protocol' )
		assert self.request is not None, f'invalid {self.request=}'
		assert self.request_protocol is not None, f'invalid {self.request_protocol=}'
		try:
			event = next ( self.request_protocol )
			while True:
				if isinstance ( event, NeedDataEvent ):
					self.need_data = event.reset()
					return
				yield event
				if event.exc_info:
					# re-raise the handler's exception inside the request so it can turn it into a reply
					_, exc, _ = event.exc_info
					event.exc_info = None
					assert exc is not None
					event = self.request_protocol.throw ( exc )
				else:
					event = next ( self.request_protocol )
		except Closed:
			self.request = None
			self.request_protocol = None
			raise
		except SendDataEvent as event: # request finished with a final reply
			self.request = None
			self.request_protocol = None
			yield event
		except StopIteration:
			self.request = None
			self.request_protocol = None
		except Exception as e:
			self.request = None
			self.request_protocol = None
			log.exception ( 'internal protocol error:' )
			raise Closed ( repr ( e ) ) from e


class ServerProtocol ( Protocol ):
	def __init__ ( self, tls: bool, hostname: str ) -> None:
		assert isinstance ( hostname, str ) and not _r_eol.search ( hostname ), f'invalid {hostname=}'
		self.hostname = hostname
		super().__init__ ( tls )
	
	def startup ( self ) -> Iterator[Event]:
		# override this if server protocol needs to say "hi" first
		yield from ()
	
	@abstractmethod
	def _parse_request_line ( self, line: BYTES ) -> Tuple[str,Opt[Type[BaseRequest]],str]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._parse_request_line()' )
	
	@abstractmethod
	def _error_invalid_command ( self ) -> Opt[Event]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._error_invalid_command()' )
	
	@abstractmethod
	def _error_bad_sequence ( self, requestcls: Type[BaseRequest] ) -> Opt[Event]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._error_bad_sequence()' )
	
	def _is_allowed ( self, requestcls: Type[BaseRequest] ) -> bool:
		return True
	
	def _receive_line ( self, line: BYTES ) -> Iterator[Event]:
		if self.need_data:
			self.need_data.data = bytes ( line )
			self.need_data = None
			yield from self._run_protocol()
			return
		assert self.request is None, 'server internal state error - not waiting for data but a request is active'
		if not bytes ( line ).strip():
			return # blank command lines are ignored
		try:
			prefix, requestcls, suffix = self._parse_request_line ( line )
		except SendDataEvent as e:
			yield e
			return
		error: Opt[Event] = None
		if requestcls is None:
			error = self._error_invalid_command()
		elif not self._is_allowed ( requestcls ):
			error = self._error_bad_sequence ( requestcls )
		else:
			request: BaseRequest = requestcls.__new__ ( requestcls )
			self.request = request
			self.request_protocol = request._server_protocol ( self, prefix, suffix )
			yield from self._run_protocol()
			return
		if error is not None:
			yield error
