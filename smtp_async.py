# system imports:
from abc import abstractmethod
import logging

# smtp_intake imports:
from event_handling import AsyncServer
import smtp_proto as proto

logger = logging.getLogger ( __name__ )


class Server ( AsyncServer ):
	protocls = proto.Server
	proto: proto.Server
	
	@property
	def session ( self ) -> proto.Session:
		return self.proto.session
	
	async def on_GreetingAcceptEvent ( self, event: proto.GreetingAcceptEvent ) -> None:
		# implementations only need to override this if they want to change the behavior
		event.accept()
	
	@abstractmethod
	async def on_AuthEvent ( self, event: proto.AuthEvent ) -> None: # pragma: no cover
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.on_AuthEvent()' )
	
	@abstractmethod
	async def on_CompleteEvent ( self, event: proto.CompleteEvent ) -> None: # pragma: no cover
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.on_CompleteEvent()' )
