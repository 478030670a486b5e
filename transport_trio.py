from __future__ import annotations

# python imports:
import contextlib
import logging
import trio # pip install trio
from typing import Iterator, Optional as Opt, Tuple

# smtp_intake imports:
from transport import AsyncTransport
from util import BYTES

logger = logging.getLogger ( __name__ )


@contextlib.contextmanager
def _broken_as_connection_error() -> Iterator[None]:
	# trio reports dead streams with its own exception types, upstack only knows about OSError
	try:
		yield
	except ( trio.BrokenResourceError, trio.ClosedResourceError ) as e:
		raise ConnectionError ( repr ( e ) ) from e


class TrioTransport ( AsyncTransport ):
	stream: trio.abc.Stream
	read_timeout: Opt[float] = None # seconds, None waits forever
	write_timeout: float = 30.0
	close_timeout: float = 0.05
	
	def __init__ ( self, stream: trio.abc.Stream, read_timeout: Opt[float] = None ) -> None:
		self.stream = stream
		if read_timeout is not None:
			self.read_timeout = read_timeout
	
	async def read ( self ) -> bytes:
		with _broken_as_connection_error():
			if self.read_timeout is None:
				return await self.stream.receive_some()
			with trio.move_on_after ( self.read_timeout ):
				return await self.stream.receive_some()
		raise TimeoutError ( f'{type(self).__module__}.{type(self).__name__} timeout waiting to read data' )
	
	async def write ( self, data: BYTES ) -> None:
		with _broken_as_connection_error():
			with trio.move_on_after ( self.write_timeout ):
				await self.stream.send_all ( data )
				return
		raise TimeoutError ( f'{type(self).__module__}.{type(self).__name__} timeout waiting to write {bytes(data)=}' )
	
	async def close ( self ) -> None:
		with trio.move_on_after ( self.close_timeout ):
			await self.stream.aclose()
	
	def peername ( self ) -> Opt[Tuple[str,int]]:
		sock = getattr ( self.stream, 'socket', None ) # only trio.SocketStream has one
		if sock is None:
			return None
		try:
			host, port, *_ = sock.getpeername()
		except ( OSError, ValueError ):
			return None
		return str ( host ), int ( port )
