from __future__ import annotations

# python imports:
from dataclasses import dataclass, replace
import logging
import os
from typing import Any, Mapping, Optional as Opt

# pip imports:
from dotenv import load_dotenv # pip install python-dotenv

logger = logging.getLogger ( __name__ )

_truthy = ( '1', 'true', 'yes', 'on' )


def _bool ( environ: Mapping[str,str], key: str, default: bool ) -> bool:
	value = environ.get ( key )
	if value is None or not value.strip():
		return default
	return value.strip().lower() in _truthy


def _opt_int ( environ: Mapping[str,str], key: str ) -> Opt[int]:
	value = environ.get ( key, '' ).strip()
	return int ( value ) if value else None


def _opt_float ( environ: Mapping[str,str], key: str ) -> Opt[float]:
	value = environ.get ( key, '' ).strip()
	return float ( value ) if value else None


@dataclass ( frozen = True )
class Settings:
	host: str = '0.0.0.0'
	port: int = 2525
	hostname: str = 'localhost' # announced in the 220 greeting and HELO/EHLO replies
	auth_enabled: bool = False
	username: str = ''
	password: str = ''
	allow_insecure_auth: bool = True
	max_message_size: Opt[int] = None
	reply_to_unknown: bool = False
	require_auth_for_mail: bool = False
	dot_unstuffing: bool = False
	read_timeout: Opt[float] = None
	output: str = '-' # JSON-lines destination, '-' is stdout
	log_level: str = 'INFO'
	
	@classmethod
	def from_env ( cls, environ: Opt[Mapping[str,str]] = None ) -> Settings:
		'''
		reads SMTP_* and LOG_LEVEL variables
		
		with no explicit mapping a .env file is loaded into os.environ first
		'''
		if environ is None:
			load_dotenv()
			environ = os.environ
		return cls (
			host = environ.get ( 'SMTP_HOST', cls.host ),
			port = int ( environ.get ( 'SMTP_PORT', cls.port ) ),
			hostname = environ.get ( 'SMTP_HOSTNAME', cls.hostname ),
			auth_enabled = _bool ( environ, 'SMTP_AUTH_ENABLED', cls.auth_enabled ),
			username = environ.get ( 'SMTP_USERNAME', cls.username ),
			password = environ.get ( 'SMTP_PASSWORD', cls.password ),
			allow_insecure_auth = _bool ( environ, 'SMTP_ALLOW_INSECURE_AUTH', cls.allow_insecure_auth ),
			max_message_size = _opt_int ( environ, 'SMTP_MAX_MESSAGE_SIZE' ),
			reply_to_unknown = _bool ( environ, 'SMTP_REPLY_TO_UNKNOWN', cls.reply_to_unknown ),
			require_auth_for_mail = _bool ( environ, 'SMTP_REQUIRE_AUTH_FOR_MAIL', cls.require_auth_for_mail ),
			dot_unstuffing = _bool ( environ, 'SMTP_DOT_UNSTUFFING', cls.dot_unstuffing ),
			read_timeout = _opt_float ( environ, 'SMTP_READ_TIMEOUT' ),
			output = environ.get ( 'SMTP_OUTPUT', cls.output ),
			log_level = environ.get ( 'LOG_LEVEL', cls.log_level ).upper(),
		)
	
	def override ( self, **changes: Any ) -> Settings:
		# None means "not given on the command line"
		return replace ( self, **{ k: v for k, v in changes.items() if v is not None } )
	
	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(host={self.host!r}, port={self.port!r}, hostname={self.hostname!r}, auth_enabled={self.auth_enabled!r}, username={self.username!r})'
