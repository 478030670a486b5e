from __future__ import annotations

# python imports:
import argparse
import logging
import signal
import trio # pip install trio
from typing import List, Optional as Opt

# pip imports:
from packaging.version import parse as parse_version # pip install packaging

# smtp_intake imports:
from config import Settings
from intake import JsonLinesSink, build_acceptor

logger = logging.getLogger ( __name__ )

__version__ = parse_version ( '0.1.0' )


def build_parser() -> argparse.ArgumentParser:
	p = argparse.ArgumentParser (
		prog = 'smtp-intake',
		description = 'Receive mail over SMTP and write each message as a JSON line',
	)
	p.add_argument ( '--version', action = 'version', version = f'%(prog)s {__version__}' )
	p.add_argument ( '--host', help = 'listen address (env SMTP_HOST, default 0.0.0.0)' )
	p.add_argument ( '--port', type = int, help = 'listen port (env SMTP_PORT, default 2525)' )
	p.add_argument ( '--hostname', help = 'name announced to clients (env SMTP_HOSTNAME)' )
	p.add_argument ( '--auth', dest = 'auth_enabled', action = 'store_true', default = None,
		help = 'offer AUTH PLAIN checked against --username/--password (env SMTP_AUTH_ENABLED)',
	)
	p.add_argument ( '--username', help = 'static credential user (env SMTP_USERNAME)' )
	p.add_argument ( '--password', help = 'static credential password (env SMTP_PASSWORD)' )
	p.add_argument ( '--no-insecure-auth', dest = 'allow_insecure_auth', action = 'store_false', default = None,
		help = 'refuse AUTH on unencrypted connections (env SMTP_ALLOW_INSECURE_AUTH)',
	)
	p.add_argument ( '--max-message-size', type = int, help = 'bytes, larger messages get 552 (env SMTP_MAX_MESSAGE_SIZE)' )
	p.add_argument ( '--reply-to-unknown', action = 'store_true', default = None,
		help = 'answer unknown or out-of-sequence commands with 500/503 (env SMTP_REPLY_TO_UNKNOWN)',
	)
	p.add_argument ( '--require-auth-for-mail', action = 'store_true', default = None,
		help = 'with --auth, answer MAIL with 530 until the client authenticates (env SMTP_REQUIRE_AUTH_FOR_MAIL)',
	)
	p.add_argument ( '--dot-unstuffing', action = 'store_true', default = None,
		help = 'strip the leading dot from message lines that start with one (env SMTP_DOT_UNSTUFFING)',
	)
	p.add_argument ( '--read-timeout', type = float, help = 'idle seconds before a connection is dropped (env SMTP_READ_TIMEOUT)' )
	p.add_argument ( '-o', '--output', help = "JSON-lines file, '-' for stdout (env SMTP_OUTPUT)" )
	p.add_argument ( '--log-level', type = str.upper, choices = ( 'DEBUG', 'INFO', 'WARNING', 'ERROR' ),
		help = 'env LOG_LEVEL, default INFO',
	)
	return p


async def serve ( settings: Settings ) -> None:
	log = logger.getChild ( 'serve' )
	acceptor = build_acceptor ( settings, JsonLinesSink ( settings.output ) )
	async with trio.open_nursery() as nursery:
		await nursery.start ( acceptor.serve )
		with trio.open_signal_receiver ( signal.SIGINT, signal.SIGTERM ) as signals:
			async for signum in signals:
				log.info ( f'received {signal.Signals(signum).name}, no longer accepting connections' )
				acceptor.shutdown()
				break


def main ( argv: Opt[List[str]] = None ) -> None:
	args = build_parser().parse_args ( argv )
	settings = Settings.from_env().override ( **{
		k: v for k, v in vars ( args ).items() if k != 'version'
	} )
	logging.basicConfig (
		level = getattr ( logging, settings.log_level, logging.INFO ),
		format = '[%(name)s %(levelname)s] %(message)s',
	)
	logger.getChild ( 'main' ).debug ( f'{settings=}' )
	trio.run ( serve, settings )


if __name__ == '__main__':
	main()
