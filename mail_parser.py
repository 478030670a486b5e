#region PROLOGUE --------------------------------------------------------------
from __future__ import annotations

# python imports:
from dataclasses import dataclass, field
import datetime
import email.utils
import logging
import re
from typing import Dict, List, Optional as Opt, Union

# smtp_intake imports:
from mail_tokenizer import (
	Address, AddressField, disposition_filename, disposition_type,
	find_boundary, media_type, parse_address_list, split_header_block,
	split_lines,
)
from util import BYTES, bytes_types, b2s, s2b

logger = logging.getLogger ( __name__ )

MAX_MULTIPART_DEPTH = 8

_r_script_style = re.compile ( r'<(script|style)\b[^>]*>.*?</\1\s*>', re.I | re.S )
_r_tag = re.compile ( r'<[^>]+>' )
_r_entity = re.compile ( r'&(nbsp|amp|lt|gt|quot|#39);' )
_r_whitespace = re.compile ( r'\s+' )
_r_eol = re.compile ( r'[\r\n]' )

_entities = {
	'nbsp': ' ',
	'amp': '&',
	'lt': '<',
	'gt': '>',
	'quot': '"',
	'#39': "'",
}

#endregion
#region DATA ------------------------------------------------------------------

@dataclass
class Attachment:
	filename: Opt[str] = None
	content_type: Opt[str] = None
	content: bytes = field ( default = b'', repr = False )
	
	@property
	def size ( self ) -> int:
		return len ( self.content )


@dataclass
class MultipartSection:
	headers: Dict[str,str]
	content: str


@dataclass
class ParsedMessage:
	subject: str = ''
	to: AddressField = field ( default_factory = lambda: Address ( '', '' ) )
	from_: AddressField = field ( default_factory = lambda: Address ( '', '' ) )
	text: str = ''
	html: str = ''
	date: Opt[datetime.datetime] = None
	message_id: str = ''
	headers: Dict[str,str] = field ( default_factory = dict )
	attachments: List[Attachment] = field ( default_factory = list )

#endregion
#region PARSING ---------------------------------------------------------------

def parse_date ( value: str ) -> Opt[datetime.datetime]:
	log = logger.getChild ( 'parse_date' )
	value = value.strip()
	if not value:
		return None
	try:
		return email.utils.parsedate_to_datetime ( value )
	except ( TypeError, ValueError, IndexError ):
		pass
	iso = value[:-1] + '+00:00' if value[-1:] in 'Zz' else value
	try:
		return datetime.datetime.fromisoformat ( iso )
	except ValueError:
		log.debug ( f'unparsable {value=}' )
		return None


def html_to_text ( html: str ) -> str:
	text = _r_script_style.sub ( '', html )
	text = _r_tag.sub ( ' ', text )
	# one pass, so "&amp;lt;" comes out as "&lt;" and not "<"
	text = _r_entity.sub ( lambda m: _entities[m.group ( 1 )], text )
	return _r_whitespace.sub ( ' ', text ).strip()


def split_multipart ( lines: List[str], boundary: str ) -> List[MultipartSection]:
	delimiter = f'--{boundary}'
	closing = f'--{boundary}--'
	chunks: List[List[str]] = []
	current: Opt[List[str]] = None
	for line in lines:
		marker = line.rstrip()
		if marker == closing:
			break
		if marker == delimiter:
			current = []
			chunks.append ( current )
		elif current is not None: # anything before the first delimiter is preamble
			current.append ( line )
	
	sections: List[MultipartSection] = []
	for chunk in chunks:
		if not ''.join ( chunk ).strip():
			continue
		if chunk[-1] == '': # the line break before a delimiter belongs to the delimiter
			chunk = chunk[:-1]
		headers, body = split_header_block ( chunk )
		sections.append ( MultipartSection ( headers, '\r\n'.join ( body ) ) )
	return sections


def _classify ( section: MultipartSection, msg: ParsedMessage, depth: int ) -> None:
	log = logger.getChild ( '_classify' )
	content_type = section.headers.get ( 'content-type', '' )
	ctype = media_type ( content_type )
	disposition = section.headers.get ( 'content-disposition', '' )
	
	if ctype.startswith ( 'multipart/' ):
		boundary = find_boundary ( content_type )
		if boundary and depth < MAX_MULTIPART_DEPTH:
			for sub in split_multipart ( split_lines ( section.content ), boundary ):
				_classify ( sub, msg, depth + 1 )
			return
		log.debug ( f'not descending into {ctype} section at {depth=}' )
	
	if ctype == 'text/plain':
		msg.text = section.content.rstrip()
	elif ctype == 'text/html':
		msg.html = section.content.rstrip()
	elif disposition_type ( disposition ) == 'attachment':
		content = _r_eol.sub ( '', section.content ).strip()
		msg.attachments.append ( Attachment (
			filename = disposition_filename ( disposition ),
			content_type = ctype or None,
			content = s2b ( content, 'utf-8' ),
		) )
	# inline parts and anything unrecognized are left out


def parse_message ( raw: Union[BYTES,str] ) -> ParsedMessage:
	'''
	Reconstructs a structured message from a raw payload.
	
	Never raises on malformed input: missing pieces come back empty and an
	unparsable date comes back as None.
	'''
	log = logger.getChild ( 'parse_message' )
	text = b2s ( raw, 'utf-8', 'replace' ) if isinstance ( raw, bytes_types ) else raw
	headers, body = split_header_block ( split_lines ( text ) )
	
	msg = ParsedMessage (
		subject = headers.get ( 'subject', '' ),
		to = parse_address_list ( headers.get ( 'to', '' ) ),
		from_ = parse_address_list ( headers.get ( 'from', '' ) ),
		date = parse_date ( headers.get ( 'date', '' ) ),
		message_id = headers.get ( 'message-id', '' ).strip(),
		headers = headers,
	)
	
	content_type = headers.get ( 'content-type', '' )
	boundary = find_boundary ( content_type )
	if boundary:
		sections = split_multipart ( body, boundary )
		log.debug ( f'{len(sections)} sections in {media_type(content_type)!r} message' )
		for section in sections:
			_classify ( section, msg, 1 )
	elif media_type ( content_type ) == 'text/html':
		msg.html = '\r\n'.join ( body )
	else:
		msg.text = '\r\n'.join ( body )
	
	if not msg.text and msg.html:
		msg.text = html_to_text ( msg.html )
	return msg

#endregion
