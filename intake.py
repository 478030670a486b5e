#region PROLOGUE --------------------------------------------------------------
from __future__ import annotations

# python imports:
from abc import ABCMeta, abstractmethod
import hmac
import json
import logging
import sys
import trio # pip install trio
from typing import Any, Dict, List, Optional as Opt

# smtp_intake imports:
from config import Settings
from mail_parser import ParsedMessage, parse_message
from mail_tokenizer import AddressField
import smtp_proto as proto
import smtp_trio
from util import b2s

logger = logging.getLogger ( __name__ )

#endregion
#region COLLABORATORS ---------------------------------------------------------

class Authenticator ( metaclass = ABCMeta ):
	@abstractmethod
	async def authenticate ( self, uid: str, pwd: str ) -> Opt[str]:
		''' returns the authenticated identity, or None to refuse '''
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.authenticate()' )


class StaticAuthenticator ( Authenticator ):
	def __init__ ( self, username: str, password: str ) -> None:
		self.username = username
		self.password = password
	
	async def authenticate ( self, uid: str, pwd: str ) -> Opt[str]:
		if not self.username:
			return None
		ok_uid = hmac.compare_digest ( uid.encode ( 'utf-8' ), self.username.encode ( 'utf-8' ) )
		ok_pwd = hmac.compare_digest ( pwd.encode ( 'utf-8' ), self.password.encode ( 'utf-8' ) )
		return uid if ok_uid and ok_pwd else None


class MessageSink ( metaclass = ABCMeta ):
	@abstractmethod
	async def deliver ( self, message: ParsedMessage, session: proto.Session, raw: bytes ) -> None:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.deliver()' )


def _address_text ( field: AddressField ) -> str:
	if isinstance ( field, list ):
		return ', '.join ( address.text for address in field )
	return field.text


def message_record ( message: ParsedMessage, raw: bytes ) -> Dict[str,Any]:
	# the flat shape downstream consumers get, one per accepted message
	return {
		'subject': message.subject,
		'to': _address_text ( message.to ),
		'from': _address_text ( message.from_ ),
		'body': message.text or message.html,
		'html': message.html,
		'text': message.text,
		'date': message.date.isoformat() if message.date is not None else None,
		'messageId': message.message_id,
		'attachments': [ {
			'filename': attachment.filename,
			'contentType': attachment.content_type,
			'size': attachment.size,
		} for attachment in message.attachments ],
		'headers': dict ( message.headers ),
		'raw': b2s ( raw, 'utf-8', 'replace' ),
	}


class JsonLinesSink ( MessageSink ):
	'''
	Appends one JSON object per message to a file, or to stdout when path is '-'.
	
	Writes are serialized so concurrent sessions never interleave lines.
	'''
	def __init__ ( self, path: str = '-' ) -> None:
		self.path = path
		self._lock = trio.Lock()
	
	async def deliver ( self, message: ParsedMessage, session: proto.Session, raw: bytes ) -> None:
		record = message_record ( message, raw )
		record['envelope'] = {
			'mailFrom': session.mail_from,
			'rcptTo': list ( session.rcpt_to ),
			'user': session.user,
			'remoteAddress': session.remote_address,
		}
		line = json.dumps ( record, ensure_ascii = False ) + '\n'
		async with self._lock:
			if self.path == '-':
				stdout = trio.wrap_file ( sys.stdout )
				await stdout.write ( line )
				await stdout.flush()
			else:
				async with await trio.open_file ( self.path, 'a', encoding = 'utf-8' ) as f:
					await f.write ( line )


class MemorySink ( MessageSink ):
	''' keeps every delivered message in a list, handy for embedding and tests '''
	def __init__ ( self ) -> None:
		self.messages: List[ParsedMessage] = []
		self.records: List[Dict[str,Any]] = []
	
	async def deliver ( self, message: ParsedMessage, session: proto.Session, raw: bytes ) -> None:
		self.messages.append ( message )
		self.records.append ( message_record ( message, raw ) )

#endregion
#region SERVER ----------------------------------------------------------------

class IntakeServer ( smtp_trio.Server ):
	sink: MessageSink
	authenticator: Opt[Authenticator] = None
	
	async def on_AuthEvent ( self, event: proto.AuthEvent ) -> None:
		log = logger.getChild ( 'IntakeServer.on_AuthEvent' )
		if self.authenticator is None:
			log.warning ( 'authentication attempted but no authenticator is configured' )
			event.reject()
			return
		try:
			identity = await self.authenticator.authenticate ( event.uid, event.pwd )
		except Exception:
			log.exception ( f'authenticator failed for {event.uid!r}:' )
			event.reject()
			return
		if identity:
			event.accept ( identity )
		else:
			log.info ( f'{self.session.remote_address}:{self.session.remote_port} failed to authenticate as {event.uid!r}' )
			event.reject()
	
	async def on_CompleteEvent ( self, event: proto.CompleteEvent ) -> None:
		log = logger.getChild ( 'IntakeServer.on_CompleteEvent' )
		try:
			message = parse_message ( event.data )
			await self.sink.deliver ( message, event.session, event.data )
		except Exception:
			log.exception ( f'failed to deliver message from {event.mail_from!r}:' )
			event.reject()
			return
		log.info ( f'accepted message {message.message_id!r} from {event.mail_from!r} for {event.rcpt_to!r} ({len(event.data)} bytes)' )
		event.accept()


def build_acceptor ( settings: Settings,
	sink: MessageSink,
	authenticator: Opt[Authenticator] = None,
) -> smtp_trio.Acceptor:
	if authenticator is None and settings.auth_enabled:
		authenticator = StaticAuthenticator ( settings.username, settings.password )
	
	async def handler ( stream: trio.abc.Stream ) -> None:
		server = IntakeServer.from_stream ( stream, False, settings.hostname,
			read_timeout = settings.read_timeout,
			auth_required = settings.auth_enabled,
			allow_insecure_auth = settings.allow_insecure_auth,
			reply_to_unknown = settings.reply_to_unknown,
			max_message_size = settings.max_message_size,
			require_auth_for_mail = settings.require_auth_for_mail,
			dot_unstuffing = settings.dot_unstuffing,
		)
		server.sink = sink
		server.authenticator = authenticator
		await server.run()
	
	return smtp_trio.Acceptor ( handler, settings.port, settings.host )

#endregion
