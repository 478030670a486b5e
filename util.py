import base64
from typing import Union

BYTES = Union[bytes,bytearray,memoryview]
bytes_types = ( bytes, bytearray, memoryview )

def b2s ( b: BYTES, encoding: str = 'us-ascii', errors: str = 'strict' ) -> str:
	return bytes ( b ).decode ( encoding, errors )

def s2b ( s: str, encoding: str = 'us-ascii', errors: str = 'strict' ) -> bytes:
	return s.encode ( encoding, errors )

def b64_encode_str ( s: str, encoding: str = 'utf-8' ) -> str:
	return b2s ( base64.b64encode ( s2b ( s, encoding ) ) )

def b64_decode_str ( s: str, encoding: str = 'utf-8' ) -> str:
	# strict: reject non-alphabet characters
	return b2s ( base64.b64decode ( s2b ( s ), validate = True ), encoding )

def strip_eol ( line: BYTES ) -> bytes:
	b = bytes ( line )
	if b.endswith ( b'\r\n' ):
		return b[:-2]
	if b.endswith ( b'\n' ):
		return b[:-1]
	return b
