from __future__ import annotations

# python imports:
from abc import ABCMeta
import contextlib
import logging
import sys
from typing import Any, Iterator, Type

# smtp_intake imports:
from base_proto import Event, SendDataEvent, ServerProtocol, Closed, ProtocolError
from transport import AsyncTransport
from util import b2s

logger = logging.getLogger ( __name__ )


@contextlib.contextmanager
def _event_exception_safety ( event: Event ) -> Iterator[None]:
	try:
		yield
	except Exception:
		event.exc_info = sys.exc_info()


class AsyncEventHandler:
	transport: AsyncTransport
	
	async def on_SendDataEvent ( self, event: SendDataEvent ) -> None:
		log = logger.getChild ( 'AsyncEventHandler.on_SendDataEvent' )
		for chunk in event.chunks:
			log.debug ( f'S>{b2s(chunk,"utf-8","replace").rstrip()}' )
			await self.transport.write ( chunk )
	
	async def _on_event ( self, event: Event ) -> None:
		if isinstance ( event, SendDataEvent ):
			await self.on_SendDataEvent ( event ) # transport faults propagate and end the connection
			return
		with _event_exception_safety ( event ):
			func = getattr ( self, f'on_{type(event).__name__}' )
			await func ( event )
	
	async def close ( self ) -> None:
		await self.transport.close()


@contextlib.contextmanager
def close_if_oserror() -> Iterator[None]:
	try:
		yield
	except OSError as e: # includes ConnectionError and TimeoutError
		raise Closed ( repr ( e ) ) from e


class AsyncServer ( AsyncEventHandler, metaclass = ABCMeta ):
	protocls: Type[ServerProtocol]
	proto: ServerProtocol
	
	def __init__ ( self,
		transport: AsyncTransport,
		tls: bool,
		server_hostname: str,
		**proto_options: Any,
	) -> None:
		self.transport = transport
		self.server_hostname = server_hostname
		self.proto = self.protocls ( tls, server_hostname, **proto_options )
	
	async def run ( self ) -> None:
		log = logger.getChild ( 'AsyncServer.run' )
		try:
			with close_if_oserror():
				for event in self.proto.startup():
					await self._on_event ( event )
			
			while True:
				with close_if_oserror():
					data = await self.transport.read()
				log.debug ( f'C>{b2s(data,"utf-8","replace").rstrip()}' )
				with close_if_oserror():
					for event in self.proto.receive ( data ):
						await self._on_event ( event )
		except Closed as e:
			log.debug ( f'connection closed with reason: {e.args[0]!r}' )
		except ProtocolError as e:
			log.warning ( f'closing connection: {e}' )
		finally:
			await self.transport.close()
