from __future__ import annotations

# python imports:
import logging
import trio # pip install trio
from typing import Any, Awaitable, Callable, List, Optional as Opt, Type

# smtp_intake imports:
import smtp_async
from transport_trio import TrioTransport as Transport

logger = logging.getLogger ( __name__ )

ConnectionHandler = Callable[[trio.abc.Stream],Awaitable[None]]


class Server ( smtp_async.Server ):
	@classmethod
	def from_stream ( cls: Type[Server],
		stream: trio.abc.Stream,
		tls: bool,
		server_hostname: str,
		read_timeout: Opt[float] = None,
		**proto_options: Any,
	) -> Server:
		transport = Transport ( stream, read_timeout )
		peer = transport.peername()
		if peer is not None:
			proto_options.setdefault ( 'remote_address', peer[0] )
			proto_options.setdefault ( 'remote_port', peer[1] )
		return cls ( transport, tls, server_hostname, **proto_options )


class Acceptor:
	'''
	Binds the listening socket(s) and runs one session task per accepted connection.
	
	serve() is meant to be started with nursery.start(), which hands back the
	Acceptor once the sockets are bound. shutdown() stops accepting new
	connections and closes the listening sockets without touching sessions
	that are already running; serve() itself only returns after they finish.
	'''
	accept_error_delay: float = 0.1 # same back-off trio.serve_listeners uses
	
	def __init__ ( self,
		handler: ConnectionHandler,
		port: int,
		host: Opt[str] = None,
	) -> None:
		self.handler = handler
		self.host = host
		self.port = port
		self.listeners: List[trio.SocketListener] = []
		self._accept_scope: Opt[trio.CancelScope] = None
		self._closed = trio.Event()
	
	@property
	def closed ( self ) -> bool:
		return self._closed.is_set()
	
	async def serve ( self, *, task_status: trio.TaskStatus[Acceptor] = trio.TASK_STATUS_IGNORED ) -> None:
		log = logger.getChild ( 'Acceptor.serve' )
		self.listeners = await trio.open_tcp_listeners ( self.port, host = self.host or None )
		if not self.port:
			self.port = self.listeners[0].socket.getsockname()[1]
		log.info ( f'SMTP server listening on {self.host or "*"}:{self.port}' )
		async with trio.open_nursery() as sessions:
			try:
				with trio.CancelScope() as self._accept_scope:
					async with trio.open_nursery() as acceptors:
						for listener in self.listeners:
							acceptors.start_soon ( self._accept_loop, listener, sessions )
						task_status.started ( self )
			finally:
				with trio.CancelScope ( shield = True ):
					for listener in self.listeners:
						await listener.aclose()
				self._closed.set()
				log.info ( f'SMTP server on {self.host or "*"}:{self.port} stopped' )
	
	def shutdown ( self ) -> None:
		if self._accept_scope is not None:
			self._accept_scope.cancel()
	
	async def wait_closed ( self ) -> None:
		await self._closed.wait()
	
	async def _accept_loop ( self, listener: trio.SocketListener, sessions: trio.Nursery ) -> None:
		log = logger.getChild ( 'Acceptor._accept_loop' )
		while True:
			try:
				stream = await listener.accept()
			except OSError as e:
				log.error ( f'error accepting connection: {e!r}' )
				await trio.sleep ( self.accept_error_delay )
				continue
			sessions.start_soon ( self._run_session, stream )
	
	async def _run_session ( self, stream: trio.SocketStream ) -> None:
		log = logger.getChild ( 'Acceptor._run_session' )
		try:
			await self.handler ( stream )
		except Exception:
			log.exception ( 'connection-level fault, session discarded:' )
			await trio.aclose_forcefully ( stream )
