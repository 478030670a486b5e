# python imports:
import logging
from pathlib import Path
import sys
import unittest

if __name__ == '__main__': # pragma: no cover
	sys.path.append ( str ( Path ( __file__ ).parent.parent.absolute() ) )

# smtp_intake imports:
import mail_tokenizer as tok
from mail_tokenizer import Address

logger = logging.getLogger ( __name__ )


class Tests ( unittest.TestCase ):
	def test_header_block ( self ) -> None:
		headers, body = tok.split_header_block ( tok.split_lines (
			'Subject: Long Subject Line That\r\n'
			' Continues on Multiple Lines\r\n'
			'\tand   a third\r\n'
			'X-Empty:\r\n'
			'not a header\r\n'
			':no key\r\n'
			'SUBJECT-Two :  value\r\n'
			'\r\n'
			'Body: not a header\r\n'
			'\r\n'
			'second paragraph'
		) )
		self.assertEqual ( headers, {
			'subject': 'Long Subject Line That Continues on Multiple Lines and   a third',
			'x-empty': '',
			'subject-two': 'value',
		} )
		self.assertEqual ( body, [ 'Body: not a header', '', 'second paragraph' ] )
	
	def test_header_block_edges ( self ) -> None:
		# continuation before any header is dropped, last occurrence wins
		headers, body = tok.split_header_block ( [ ' orphan', 'To: a@b.example', 'to: c@d.example' ] )
		self.assertEqual ( headers, { 'to': 'c@d.example' } )
		self.assertEqual ( body, [] )
		
		headers, body = tok.split_header_block ( [ 'X-Empty:', ' filled later' ] )
		self.assertEqual ( headers, { 'x-empty': 'filled later' } )
		
		headers, body = tok.split_header_block ( [ '', 'just body' ] )
		self.assertEqual ( headers, {} )
		self.assertEqual ( body, [ 'just body' ] )
	
	def test_params ( self ) -> None:
		self.assertEqual ( tok.find_boundary ( 'multipart/mixed; boundary="b1 with space"' ), 'b1 with space' )
		self.assertEqual ( tok.find_boundary ( 'multipart/mixed; BOUNDARY=abc123; charset=x' ), 'abc123' )
		self.assertEqual ( tok.find_boundary ( 'multipart/mixed;boundary=abc' ), 'abc' )
		self.assertIsNone ( tok.find_boundary ( 'text/plain; charset=utf-8' ) )
		self.assertIsNone ( tok.find_boundary ( 'multipart/mixed; xboundary=abc' ) )
		
		self.assertEqual ( tok.disposition_filename ( 'attachment; filename="f.pdf"' ), 'f.pdf' )
		self.assertEqual ( tok.disposition_filename ( 'attachment; filename=document.pdf' ), 'document.pdf' )
		self.assertEqual ( tok.disposition_filename ( 'attachment; filename="my report.pdf"; size=3' ), 'my report.pdf' )
		self.assertIsNone ( tok.disposition_filename ( 'attachment' ) )
		self.assertIsNone ( tok.disposition_filename ( 'attachment; name=x.pdf' ) )
		
		self.assertEqual ( tok.media_type ( ' Text/HTML ; charset=utf-8' ), 'text/html' )
		self.assertEqual ( tok.disposition_type ( 'Attachment; filename=x' ), 'attachment' )
		self.assertEqual ( tok.media_type ( '' ), '' )
	
	def test_address_shapes ( self ) -> None:
		self.assertEqual ( tok.parse_address ( '"Doe, John" <john@example.com>' ),
			Address ( text = '"Doe, John" <john@example.com>', address = 'john@example.com', name = 'Doe, John' ),
		)
		self.assertEqual ( tok.parse_address ( 'John Doe <john@example.com>' ),
			Address ( text = 'John Doe <john@example.com>', address = 'john@example.com', name = 'John Doe' ),
		)
		self.assertEqual ( tok.parse_address ( '<john@example.com>' ),
			Address ( text = '<john@example.com>', address = 'john@example.com' ),
		)
		self.assertEqual ( tok.parse_address ( '"" <john@example.com>' ),
			Address ( text = '"" <john@example.com>', address = 'john@example.com' ),
		)
		self.assertEqual ( tok.parse_address ( 'john@example.com' ),
			Address ( text = 'john@example.com', address = 'john@example.com' ),
		)
		self.assertEqual ( tok.parse_address ( 'undisclosed-recipients:;' ),
			Address ( text = 'undisclosed-recipients:;', address = 'undisclosed-recipients:;' ),
		)
	
	def test_address_list ( self ) -> None:
		self.assertEqual ( tok.split_address_list ( '"Doe, John" <j@x.example>, ,b@y.example,' ), [
			'"Doe, John" <j@x.example>',
			'b@y.example',
		] )
		single = tok.parse_address_list ( 'Jane <jane@example.com>' )
		self.assertIsInstance ( single, Address )
		
		many = tok.parse_address_list ( 'John Doe <john@example.com>, jane@example.com, "Smith, Bob" <bob@example.com>' )
		assert isinstance ( many, list )
		self.assertEqual ( [ a.address for a in many ], [ 'john@example.com', 'jane@example.com', 'bob@example.com' ] )
		self.assertEqual ( [ a.name for a in many ], [ 'John Doe', None, 'Smith, Bob' ] )
		self.assertEqual ( [ a.text for a in many ], [ 'John Doe <john@example.com>', 'jane@example.com', '"Smith, Bob" <bob@example.com>' ] )
		
		self.assertEqual ( tok.parse_address_list ( '' ), Address ( text = '', address = '' ) )
		self.assertEqual ( tok.parse_address_list ( ' , ' ), Address ( text = '', address = '' ) )

if __name__ == '__main__':
	logging.basicConfig ( level = logging.DEBUG )
	unittest.main()
