#region PROLOGUE --------------------------------------------------------------
from __future__ import annotations

# python imports:
from abc import abstractmethod
import binascii
from dataclasses import dataclass, field
import enum
import logging
import re
from typing import (
	Callable, Dict, FrozenSet, Iterator, List, Optional as Opt, Tuple, Type,
)

# smtp_intake imports:
from base_proto import (
	BaseRequest, Event, NeedDataEvent, SendDataEvent, Closed,
	RequestProtocolGenerator, ServerProtocol,
)
from util import BYTES, b2s, s2b, b64_decode_str, strip_eol

logger = logging.getLogger ( __name__ )


_r_eol = re.compile ( r'[\r\n]' )
_r_mail_from = re.compile ( r'^FROM\s*:\s*<([^<>]*)>(?:\s+(.*))?$', re.I ) # RFC5321#2.4 command verbs are not case sensitive
_r_rcpt_to = re.compile ( r'^TO\s*:\s*<([^<>]+)>(?:\s+(.*))?$', re.I ) # RFC5321#2.4 command verbs are not case sensitive
_r_smtp_request = re.compile ( r'^\s*([a-z]+)(?:\s+(.*))?\s*$', re.I )

ANONYMOUS = 'anonymous'

#endregion
#region SESSION ---------------------------------------------------------------

class State ( enum.Enum ):
	GREETING = 'greeting'
	READY = 'ready'
	IN_TRANSACTION = 'mail'
	RECEIVING_DATA = 'data'

COMMAND_STATES: FrozenSet[State] = frozenset ( ( State.GREETING, State.READY, State.IN_TRANSACTION ) )


@dataclass
class Session:
	remote_address: str = 'unknown'
	remote_port: int = 0
	state: State = State.GREETING
	user: Opt[str] = None # authenticated identity
	client_hostname: str = ''
	mail_from: str = ''
	rcpt_to: List[str] = field ( default_factory = list )
	data: List[bytes] = field ( default_factory = list, repr = False )
	data_size: int = 0
	oversized: bool = False
	
	def reset ( self ) -> None:
		# new containers, a CompleteEvent may still hold the old ones
		self.mail_from = ''
		self.rcpt_to = []
		self.data = []
		self.data_size = 0
		self.oversized = False
		if self.state is not State.GREETING:
			self.state = State.READY
	
	@property
	def payload ( self ) -> bytes:
		return b''.join ( self.data )

#endregion
#region EVENTS ----------------------------------------------------------------

def ResponseEvent ( code: int, *lines: str ) -> SendDataEvent:
	seps = [ '-' ] * len ( lines )
	seps[-1] = ' '
	chunks = ( s2b ( ''.join (
		f'{code}{sep}{line}\r\n'
		for sep, line in zip ( seps, lines )
	), 'utf-8' ), )
	return SendDataEvent ( *chunks )


class AcceptRejectEvent ( Event ):
	success_code: int
	success_message: str
	error_code: int
	error_message: str
	
	def __init__ ( self ) -> None:
		self._acceptance: Opt[bool] = None
		self._code: int = self.error_code
		self._message: str = self.error_message
	
	def accept ( self ) -> None:
		self._acceptance = True
		self._code = self.success_code
		self._message = self.success_message
	
	def reject ( self, code: Opt[int] = None, message: Opt[str] = None ) -> None:
		log = logger.getChild ( 'AcceptRejectEvent.reject' )
		self._acceptance = False
		self._code = self.error_code
		self._message = self.error_message
		if code is not None:
			if not isinstance ( code, int ) or code < 400 or code > 599:
				log.error ( f'invalid error-{code=}' )
			else:
				self._code = code
		if message is not None:
			if not isinstance ( message, str ) or _r_eol.search ( message ):
				log.error ( f'invalid error-{message=}' )
			else:
				self._message = message
	
	@property
	def decided ( self ) -> bool:
		return self._acceptance is not None
	
	def _accepted ( self ) -> Tuple[bool,int,str]:
		assert self._acceptance is not None, f'you must call .accept() or .reject() on when passed a {type(self).__module__}.{type(self).__name__} object'
		assert isinstance ( self._code, int )
		assert isinstance ( self._message, str )
		return self._acceptance, self._code, self._message
	
	def go ( self ) -> Iterator[Event]:
		yield self
		if not self._acceptance:
			raise ResponseEvent ( self._code, self._message )
	
	def __repr__ ( self ) -> str:
		cls = type ( self )
		args = ', '.join ( f'{k}={getattr(self,k)!r}' for k in (
			'_acceptance',
			'_code',
			'_message',
		) )
		return f'{cls.__module__}.{cls.__name__}({args})'


class GreetingAcceptEvent ( AcceptRejectEvent ):
	success_code = 220
	error_code = 421
	error_message = 'Too busy to accept mail right now'
	
	def __init__ ( self, server_hostname: str ) -> None:
		self.success_message = f'{server_hostname} SMTP Server Ready'
		super().__init__()


class AuthEvent ( AcceptRejectEvent ):
	success_code = 235
	success_message = 'Authentication successful'
	error_code = 535
	error_message = 'Authentication failed'
	identity: Opt[str] = None
	
	def __init__ ( self, uid: str, pwd: str ) -> None:
		super().__init__()
		self.uid = uid
		self.pwd = pwd
	
	def accept ( self, identity: Opt[str] = None ) -> None:
		super().accept()
		self.identity = identity or self.uid
	
	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(uid={self.uid!r})'


class CompleteEvent ( AcceptRejectEvent ):
	success_code = 250
	success_message = 'OK'
	error_code = 550
	error_message = 'Error processing message'
	
	def __init__ ( self, session: Session, data: bytes ) -> None:
		super().__init__()
		self.session = session
		self.data = data
		# the envelope outlives session.reset(), which swaps in new containers
		self.mail_from: str = session.mail_from
		self.rcpt_to: List[str] = session.rcpt_to

#endregion
#region REQUESTS --------------------------------------------------------------

class Request ( BaseRequest ):
	states: FrozenSet[State] = frozenset()
	
	@classmethod
	def subparse ( cls: Type[Request],
		server: Server,
		argtext: str,
	) -> Tuple[Type[Request],str]:
		return cls, argtext
	
	def _server_protocol ( self, server: ServerProtocol, prefix: str, suffix: str ) -> RequestProtocolGenerator:
		assert isinstance ( server, Server )
		assert not prefix
		yield from self.server_protocol ( server, suffix )
	
	@abstractmethod
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		cls = self.__class__
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.server_protocol()' )


_request_verbs: Dict[str,Type[Request]] = {}

def request_verb ( verb: str ) -> Callable[[Type[Request]],Type[Request]]:
	def registrar ( cls: Type[Request] ) -> Type[Request]:
		assert verb == verb.upper() and ' ' not in verb and len ( verb ) <= 71, f'invalid request {verb=}'
		assert verb not in _request_verbs, f'duplicate request verb {verb!r}'
		_request_verbs[verb] = cls
		return cls
	return registrar

_auth_plugins: Dict[str,Type[_Auth]] = {}

def auth_plugin ( name: str ) -> Callable[[Type[_Auth]],Type[_Auth]]:
	def registrar ( cls: Type[_Auth] ) -> Type[_Auth]:
		assert name == name.upper() and ' ' not in name and len ( name ) <= 71, f'invalid auth mechanism {name=}'
		assert name not in _auth_plugins, f'duplicate auth mechanism {name!r}'
		_auth_plugins[name] = cls
		return cls
	return registrar


class GreetingRequest ( Request ):
	states = frozenset ( ( State.GREETING, ) )
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		event = GreetingAcceptEvent ( server.hostname )
		yield event
		accepted, code, message = event._accepted()
		yield ResponseEvent ( code, message )
		if not accepted:
			raise Closed ( 'greeting rejected' )


@request_verb ( 'HELO' )
class HeloRequest ( Request ):
	states = frozenset ( ( State.GREETING, ) )
	
	def greeting_lines ( self, server: Server, client_hostname: str ) -> List[str]:
		if client_hostname:
			return [ f'{server.hostname} Hello {client_hostname}' ]
		return [ f'{server.hostname} Hello' ]
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		server.session.client_hostname = argtext
		server.session.state = State.READY
		yield ResponseEvent ( 250, *self.greeting_lines ( server, argtext ) )


@request_verb ( 'EHLO' )
class EhloRequest ( HeloRequest ):
	
	def greeting_lines ( self, server: Server, client_hostname: str ) -> List[str]:
		lines = super().greeting_lines ( server, client_hostname )
		if server.auth_required and ( server.tls or server.allow_insecure_auth ):
			lines.append ( 'AUTH ' + ' '.join ( _auth_plugins ) )
		return lines


@request_verb ( 'AUTH' )
class _Auth ( Request ):
	states = frozenset ( ( State.READY, ) )
	
	@classmethod
	def subparse ( cls: Type[Request],
		server: Server,
		argtext: str,
	) -> Tuple[Type[Request],str]:
		if not server.auth_required:
			return AuthAnonymousRequest, argtext
		if not server.tls and not server.allow_insecure_auth:
			raise ResponseEvent ( 538, 'Encryption required for requested authentication mechanism' )
		mechanism, *moreargtext = argtext.split ( None, 1 ) or [ '' ] # ex: mechanism='PLAIN' moreargtext=['AHVzZXIAcGFzcw==']
		if not mechanism:
			raise ResponseEvent ( 501, 'Syntax error in parameters' )
		plugincls = _auth_plugins.get ( mechanism.upper() )
		if plugincls is None:
			raise ResponseEvent ( 504, f'Unrecognized authentication mechanism: {mechanism}' )
		return plugincls, moreargtext[0] if moreargtext else ''
	
	def server_protocol ( self, server: Server, moreargtext: str ) -> RequestProtocolGenerator:
		return super().server_protocol ( server, moreargtext )
	
	def _on_authenticate ( self, server: Server, uid: str, pwd: str ) -> RequestProtocolGenerator:
		log = logger.getChild ( '_Auth._on_authenticate' )
		event = AuthEvent ( uid, pwd )
		try:
			yield event
		except Exception:
			log.exception ( 'auth handler failed:' )
			event.reject()
		if not event.decided:
			log.error ( f'auth handler did not accept or reject {event!r}' )
			event.reject()
		accepted, code, message = event._accepted()
		if not accepted:
			raise ResponseEvent ( code, message )
		server.session.user = event.identity
		log.info ( f'{server.session.remote_address}:{server.session.remote_port} authenticated as {event.identity!r}' )
		yield ResponseEvent ( code, message )


class AuthAnonymousRequest ( _Auth ):
	# authentication is optional, so every AUTH succeeds without looking at the credentials
	
	def server_protocol ( self, server: Server, moreargtext: str ) -> RequestProtocolGenerator:
		server.session.user = ANONYMOUS
		yield ResponseEvent ( AuthEvent.success_code, AuthEvent.success_message )


@auth_plugin ( 'PLAIN' )
class AuthPlainRequest ( _Auth ):
	
	def server_protocol ( self, server: Server, moreargtext: str ) -> RequestProtocolGenerator:
		log = logger.getChild ( 'AuthPlainRequest.server_protocol' )
		authtext = moreargtext.strip()
		if not authtext:
			yield ResponseEvent ( 334, '' )
			yield from ( event := NeedDataEvent() ).go()
			authtext = b2s ( event.data or b'', 'utf-8', 'replace' ).strip()
			if authtext == '*':
				raise ResponseEvent ( 501, 'Authentication cancelled' )
		try:
			_, uid, pwd = b64_decode_str ( authtext ).split ( '\0' )
		except ( binascii.Error, UnicodeDecodeError, ValueError ) as e:
			log.debug ( f'malformed auth input {authtext=}: {e=}' )
			yield ResponseEvent ( 501, 'malformed auth input RFC4616#2' )
		else:
			yield from self._on_authenticate ( server, uid, pwd )


@request_verb ( 'MAIL' )
class MailFromRequest ( Request ):
	states = frozenset ( ( State.READY, ) )
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		if server.require_auth_for_mail and server.auth_required and not server.session.user:
			raise ResponseEvent ( 530, 'Authentication required' )
		m = _r_mail_from.match ( argtext )
		if not m:
			raise ResponseEvent ( 501, 'Syntax error in parameters' )
		server.session.mail_from = m.group ( 1 ).strip()
		server.session.state = State.IN_TRANSACTION
		yield ResponseEvent ( 250, 'OK' )


@request_verb ( 'RCPT' )
class RcptToRequest ( Request ):
	states = frozenset ( ( State.IN_TRANSACTION, ) )
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		m = _r_rcpt_to.match ( argtext )
		if not m:
			raise ResponseEvent ( 501, 'Syntax error in parameters' )
		server.session.rcpt_to.append ( m.group ( 1 ).strip() )
		yield ResponseEvent ( 250, 'OK' )


@request_verb ( 'DATA' )
class DataRequest ( Request ):
	states = frozenset ( ( State.IN_TRANSACTION, ) )
	
	# see RFC 5321 4.5.2 for byte stuffing algorithm description
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		log = logger.getChild ( 'DataRequest.server_protocol' )
		session = server.session
		session.state = State.RECEIVING_DATA
		yield ResponseEvent ( 354, 'Start mail input; end with <CRLF>.<CRLF>' )
		event1 = NeedDataEvent()
		while True:
			yield from event1.go()
			line = event1.data or b''
			if strip_eol ( line ) == b'.':
				break
			if server.dot_unstuffing and line[0:1] == b'.':
				line = line[1:]
			if session.oversized:
				continue
			session.data.append ( line )
			session.data_size += len ( line )
			if server.max_message_size is not None and session.data_size > server.max_message_size:
				log.warning ( f'message from {session.mail_from!r} exceeds {server.max_message_size} bytes, discarding' )
				session.oversized = True
				session.data = []
		
		if session.oversized:
			session.reset()
			raise ResponseEvent ( 552, 'Message size exceeds fixed maximum message size' )
		
		event2 = CompleteEvent ( session, session.payload )
		try:
			yield event2
		except Exception:
			log.exception ( 'message handler failed:' )
			event2.reject()
		finally:
			session.reset()
		if not event2.decided:
			log.error ( f'message handler did not accept or reject {event2!r}' )
			event2.reject()
		_, code, message = event2._accepted()
		yield ResponseEvent ( code, message )


@request_verb ( 'RSET' )
class RsetRequest ( Request ):
	states = frozenset ( ( State.READY, State.IN_TRANSACTION ) )
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		server.session.reset()
		yield ResponseEvent ( 250, 'OK' )


@request_verb ( 'NOOP' )
class NoOpRequest ( Request ):
	states = COMMAND_STATES
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		# FYI `argtext` is ignored per RFC 5321 4.1.1.9
		yield ResponseEvent ( 250, 'OK' )


@request_verb ( 'QUIT' )
class QuitRequest ( Request ):
	states = COMMAND_STATES
	
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		yield ResponseEvent ( 221, 'Bye' )
		raise Closed ( 'QUIT' )

#endregion
#region SERVER ----------------------------------------------------------------

class Server ( ServerProtocol ):
	_MAXLINE = 8192
	auth_required: bool = False
	allow_insecure_auth: bool = True
	reply_to_unknown: bool = False # the historical behavior is to stay silent
	max_message_size: Opt[int] = None
	require_auth_for_mail: bool = False # AUTH is advertised but MAIL is not gated on it
	dot_unstuffing: bool = False # payload lines are stored exactly as received
	session: Session
	
	def __init__ ( self,
		tls: bool,
		hostname: str,
		*,
		auth_required: bool = False,
		allow_insecure_auth: bool = True,
		reply_to_unknown: bool = False,
		max_message_size: Opt[int] = None,
		require_auth_for_mail: bool = False,
		dot_unstuffing: bool = False,
		remote_address: str = 'unknown',
		remote_port: int = 0,
	) -> None:
		super().__init__ ( tls, hostname )
		assert max_message_size is None or max_message_size > 0, f'invalid {max_message_size=}'
		self.auth_required = auth_required
		self.allow_insecure_auth = allow_insecure_auth
		self.reply_to_unknown = reply_to_unknown
		self.max_message_size = max_message_size
		self.require_auth_for_mail = require_auth_for_mail
		self.dot_unstuffing = dot_unstuffing
		self.session = Session ( remote_address = remote_address, remote_port = remote_port )
	
	@property
	def state ( self ) -> State:
		return self.session.state
	
	def startup ( self ) -> Iterator[Event]:
		self.request = GreetingRequest()
		self.request_protocol = self.request.server_protocol ( self, '' )
		yield from self._run_protocol()
	
	def _is_allowed ( self, requestcls: Type[BaseRequest] ) -> bool:
		assert issubclass ( requestcls, Request )
		return self.session.state in requestcls.states
	
	def _line_limited ( self ) -> bool:
		# message lines have no length limit, only commands do
		return self.session.state is not State.RECEIVING_DATA
	
	def _parse_request_line ( self, line: BYTES ) -> Tuple[str,Opt[Type[BaseRequest]],str]:
		log = logger.getChild ( 'Server._parse_request_line' )
		m = _r_smtp_request.match ( b2s ( line, 'utf-8', 'replace' ).rstrip() )
		if not m:
			return '', None, ''
		verb, suffix = m.groups()
		verb = verb.upper() # RFC5321#2.4 command verbs are not case-sensitive
		suffix = ( suffix or '' ).strip()
		
		requestcls: Opt[Type[Request]] = _request_verbs.get ( verb )
		if requestcls is None:
			log.debug ( f'unrecognized {verb=}' )
		elif self._is_allowed ( requestcls ):
			requestcls, suffix = requestcls.subparse ( self, suffix )
		
		return '', requestcls, suffix
	
	def _error_invalid_command ( self ) -> Opt[Event]:
		if self.reply_to_unknown:
			return ResponseEvent ( 500, 'Command not recognized' )
		return None
	
	def _error_bad_sequence ( self, requestcls: Type[BaseRequest] ) -> Opt[Event]:
		log = logger.getChild ( 'Server._error_bad_sequence' )
		log.debug ( f'{requestcls.__name__} not allowed in state {self.session.state.name}' )
		if self.reply_to_unknown:
			return ResponseEvent ( 503, 'Bad sequence of commands' )
		return None

#endregion
