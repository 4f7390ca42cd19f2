# stdlib imports:
import logging
from typing import Dict, Iterator, List, Optional as Opt, Set

# local imports:
from ramp_call import Call

logger = logging.getLogger( __name__ )

class DuplicateCall( Exception ):
	pass

class Registry:
	''' live calls by uuid. Only the dispatch loop touches this, so there's no locking. '''

	def __init__( self ) -> None:
		self._calls: Dict[str,Call] = {}
		self._retired: Set[str] = set()
		self.completed = 0

	def add( self, call: Call ) -> None:
		if call.uuid in self._calls or call.uuid in self._retired:
			raise DuplicateCall( f'call uuid {call.uuid!r} was already used' )
		self._calls[call.uuid] = call

	def get( self, uuid: str ) -> Opt[Call]:
		return self._calls.get( uuid )

	def sweep( self ) -> List[Call]:
		''' remove every call that reached DONE and return them '''
		log = logger.getChild( 'Registry.sweep' )
		done = [ call for call in self._calls.values() if call.done ]
		for call in done:
			del self._calls[call.uuid]
			self._retired.add( call.uuid )
			self.completed += 1
			log.info( 'call %s finished, %d call(s) still live', call.uuid, len( self._calls ))
		return done

	def __contains__( self, uuid: object ) -> bool:
		return uuid in self._calls

	def __iter__( self ) -> Iterator[Call]:
		return iter( list( self._calls.values() ))

	def __len__( self ) -> int:
		return len( self._calls )
