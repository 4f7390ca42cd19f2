# stdlib imports:
from enum import Enum
import logging
import re
from typing import Awaitable, Callable, Dict, List

# local imports:
from esl import ESL
from ramp_settings import Config

logger = logging.getLogger( __name__ )

UUID_REGEX = re.compile( r'\w{8}-\w{4}-\w{4}-\w{4}-\w{12}' )

HANGUP_DELAY_SECONDS = 1

class CallStatus( Enum ):
	NEW = 'new'
	PLAYING = 'playing'
	WAITING_HANGUP = 'waiting-hangup'
	DONE = 'done'

class NoCallUuid( ESL.SoftError ):
	" +OK originate reply that doesn't carry a call uuid "

def call_uuid_from_reply( body: str ) -> str:
	'''
	>>> call_uuid_from_reply( '+OK 1234abcd-12ab-34cd-56ef-1234567890ab\\n' )
	'1234abcd-12ab-34cd-56ef-1234567890ab'
	>>> call_uuid_from_reply( '+OK\\n' )
	Traceback (most recent call last):
	...
	ramp_call.NoCallUuid: no call uuid in '+OK'
	'''
	m = UUID_REGEX.search( body )
	if m is None:
		raise NoCallUuid( f'no call uuid in {body.strip()!r}' )
	return m.group( 0 )

class Call:
	def __init__( self, uuid: str, config: Config ) -> None:
		self.uuid = uuid
		self.config = config
		self.status = CallStatus.NEW
		self.history: List[CallStatus] = [ CallStatus.NEW ]
		self._handlers: Dict[CallStatus,Callable[[ESL,ESL.Message],Awaitable[None]]] = {
			CallStatus.NEW: self._on_event_new,
			CallStatus.PLAYING: self._on_event_playing,
			CallStatus.WAITING_HANGUP: self._on_event_waiting_hangup,
			CallStatus.DONE: self._on_event_done,
		}

	@property
	def done( self ) -> bool:
		return self.status == CallStatus.DONE

	async def on_event( self, esl: ESL, event: ESL.Message ) -> None:
		await self._handlers[self.status]( esl, event )

	def _transition( self, status: CallStatus ) -> None:
		log = logger.getChild( 'Call._transition' )
		log.info( 'call %s: %s -> %s', self.uuid, self.status.value, status.value )
		self.status = status
		self.history.append( status )

	async def _on_event_new( self, esl: ESL, event: ESL.Message ) -> None:
		log = logger.getChild( 'Call._on_event_new' )
		answer_state = event.header( 'Answer-State' )
		if answer_state == 'ringing':
			log.info( 'call %s: ringing...', self.uuid )
		elif answer_state == 'answered':
			log.info( 'call %s: answered!', self.uuid )
			await self._play_audio( esl )
		else:
			log.debug( 'call %s: Answer-State is %r, waiting for answered', self.uuid, answer_state )

	async def _on_event_playing( self, esl: ESL, event: ESL.Message ) -> None:
		log = logger.getChild( 'Call._on_event_playing' )
		event_name = event.event_name
		if event_name == 'PLAYBACK_START':
			log.info( 'call %s: PLAYBACK_START', self.uuid )
		elif event_name == 'PLAYBACK_STOP':
			log.info( 'call %s: PLAYBACK_STOP', self.uuid )
			await self._schedule_hangup( esl )
		else:
			log.debug( 'call %s: event %r, waiting for PLAYBACK_STOP', self.uuid, event_name )

	async def _on_event_waiting_hangup( self, esl: ESL, event: ESL.Message ) -> None:
		log = logger.getChild( 'Call._on_event_waiting_hangup' )
		channel_state = event.header( 'Channel-State' )
		if channel_state == 'CS_DESTROY':
			log.info( 'call %s: CS_DESTROY', self.uuid )
			self._transition( CallStatus.DONE )
		else:
			log.debug( 'call %s: Channel-State %r (%r), waiting for CS_DESTROY', self.uuid, channel_state, event.event_name )

	async def _on_event_done( self, esl: ESL, event: ESL.Message ) -> None:
		log = logger.getChild( 'Call._on_event_done' )
		log.debug( 'ignoring event %r for call %s since it is hung up/destroyed', event.event_name, self.uuid )

	async def _play_audio( self, esl: ESL ) -> None:
		log = logger.getChild( 'Call._play_audio' )
		r = await esl.uuid_broadcast( self.uuid, self.config.audio_file, 'aleg' )
		if self.config.log_all_events:
			log.info( 'uuid_broadcast reply: %r', r.value )
		self._transition( CallStatus.PLAYING )

	async def _schedule_hangup( self, esl: ESL ) -> None:
		log = logger.getChild( 'Call._schedule_hangup' )
		await esl.sched_hangup( self.uuid, HANGUP_DELAY_SECONDS )
		self._transition( CallStatus.WAITING_HANGUP )
		log.info( 'call %s: scheduled hangup', self.uuid )

	def __repr__( self ) -> str:
		cls = type( self )
		return f'{cls.__module__}.{cls.__qualname__}(uuid={self.uuid!r}, status={self.status!r})'

async def create_call( esl: ESL, config: Config ) -> Call:
	''' originate a parked call and wrap it in a Call; any failure here is fatal to the caller '''
	log = logger.getChild( 'create_call' )
	log.info( 'new call to %s', config.destination )
	r = await esl.originate( config.dial_string, '&park' )
	uuid = call_uuid_from_reply( r.value )
	log.info( 'call created, uuid: %s', uuid )
	return Call( uuid, config )
