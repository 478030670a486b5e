'''
Small tokenizer for the pieces of a message header that the intake cares about.

Grammar (informal, applied to already-unfolded text):

	header-block  = *( header-line / continuation ) blank-line
	header-line   = key ":" value                 ; split at the first colon
	continuation  = ( SP / HTAB ) text            ; extends the previous header-line
	blank-line    = ""                            ; ends the block, the rest is body

	param         = [ ";" / WSP ] name *WSP "=" *WSP ( quoted / token )
	quoted        = DQUOTE *( any but DQUOTE ) DQUOTE   ; preferred
	token         = 1*( any but ";" / WSP / DQUOTE )    ; fallback

	address-list  = address *( "," address )      ; commas inside DQUOTEs do not split
	address       = named / angle / bare / raw    ; first match wins
	named         = ( quoted / phrase ) *WSP "<" addr-spec ">"
	angle         = "<" addr-spec ">"
	bare          = any token containing "@"
	raw           = anything else, kept verbatim

None of these functions raise on malformed input, they degrade to the most
literal reading of the text instead.
'''
from __future__ import annotations

# python imports:
from dataclasses import dataclass
import logging
import re
from typing import Dict, List, Optional as Opt, Sequence as Seq, Tuple, Union

logger = logging.getLogger ( __name__ )

_r_named_address = re.compile ( r'^(?:"([^"]*)"|([^"<]+?))\s*<([^<>]+)>' )
_r_angle_address = re.compile ( r'<([^<>]+)>' )


@dataclass
class Address:
	text: str # exactly as written in the header
	address: str
	name: Opt[str] = None

AddressField = Union[Address,List[Address]]


def split_lines ( text: str ) -> List[str]:
	return text.replace ( '\r\n', '\n' ).split ( '\n' )


def split_header_block ( lines: Seq[str] ) -> Tuple[Dict[str,str],List[str]]:
	'''
	returns the header mapping and the remaining (body) lines
	
	keys are lowercased, a repeated header replaces the earlier value, a
	continuation line is joined onto the most recent header line with exactly
	one space
	'''
	headers: Dict[str,str] = {}
	last_key: Opt[str] = None
	for i, line in enumerate ( lines ):
		if line == '':
			return headers, list ( lines[i + 1:] )
		if line[0] in ' \t':
			piece = line.strip ( ' \t' )
			if last_key is not None and piece:
				prev = headers[last_key].rstrip ( ' \t' )
				headers[last_key] = f'{prev} {piece}' if prev else piece
			continue
		key, sep, value = line.partition ( ':' )
		key = key.rstrip().lower()
		if not sep or not key:
			continue # not a header line
		headers[key] = value.lstrip()
		last_key = key
	return headers, []


def _param_patterns ( name: str ) -> Tuple[re.Pattern[str],re.Pattern[str]]:
	prefix = rf'(?:^|[;\s]){re.escape(name)}\s*=\s*'
	return (
		re.compile ( prefix + r'"([^"]*)"', re.I ),
		re.compile ( prefix + r'([^;\s"]+)', re.I ),
	)

_param_cache: Dict[str,Tuple[re.Pattern[str],re.Pattern[str]]] = {}

def header_param ( value: str, name: str ) -> Opt[str]:
	patterns = _param_cache.get ( name )
	if patterns is None:
		patterns = _param_cache[name] = _param_patterns ( name )
	for pattern in patterns:
		m = pattern.search ( value )
		if m and m.group ( 1 ):
			return m.group ( 1 )
	return None


def media_type ( value: str ) -> str:
	# ex: 'Text/Plain; charset=utf-8' -> 'text/plain'
	return value.split ( ';', 1 )[0].strip().lower()

disposition_type = media_type


def find_boundary ( content_type: str ) -> Opt[str]:
	return header_param ( content_type, 'boundary' )


def disposition_filename ( content_disposition: str ) -> Opt[str]:
	return header_param ( content_disposition, 'filename' )


def split_address_list ( value: str ) -> List[str]:
	tokens: List[str] = []
	start = 0
	quoted = False
	for i, c in enumerate ( value ):
		if c == '"':
			quoted = not quoted
		elif c == ',' and not quoted:
			tokens.append ( value[start:i] )
			start = i + 1
	tokens.append ( value[start:] )
	return [ token.strip() for token in tokens if token.strip() ]


def parse_address ( token: str ) -> Address:
	m = _r_named_address.match ( token )
	if m:
		name = ( m.group ( 1 ) if m.group ( 1 ) is not None else m.group ( 2 ) ).strip()
		if name:
			return Address ( text = token, address = m.group ( 3 ).strip(), name = name )
	m = _r_angle_address.search ( token )
	if m:
		return Address ( text = token, address = m.group ( 1 ).strip() )
	if '@' in token:
		return Address ( text = token, address = token )
	logger.getChild ( 'parse_address' ).debug ( f'unparsable address, keeping raw {token=}' )
	return Address ( text = token, address = token )


def parse_address_list ( value: str ) -> AddressField:
	addresses = [ parse_address ( token ) for token in split_address_list ( value ) ]
	if not addresses:
		return Address ( text = '', address = '' )
	if len ( addresses ) == 1:
		return addresses[0]
	return addresses
