#region copyright


# This file is Copyright (C) 2022 ITAS Solutions LP, All Rights Reserved
# Contact ITAS Solutions LP at royce3@itas-solutions.com for licensing inquiries


#endregion copyright
#region imports


# stdlib imports:
import asyncio
import datetime
import logging
import time
from typing import Optional as Opt, Set

# local imports:
from esl import ESL
from ramp_call import Call, create_call
from ramp_registry import Registry
from ramp_settings import Config


#endregion imports
#region globals


logger = logging.getLogger( __name__ )

DEBUG9 = 9


class Ticker:
	''' fixed cadence timer; ticks that were missed while we were busy get dropped, not queued up '''
	def __init__( self, interval: datetime.timedelta ) -> None:
		self.interval = interval.total_seconds()
		assert self.interval > 0, f'invalid interval={interval!r}'
		self.t1: float = time.monotonic() + self.interval

	async def wait( self ) -> None:
		delay = self.t1 - time.monotonic()
		if delay > 0:
			await asyncio.sleep( delay )
		now = time.monotonic()
		self.t1 += self.interval
		if self.t1 <= now:
			self.t1 = now + self.interval


#endregion globals
#region event source


async def pump_events(
	esl: ESL,
	queue: 'asyncio.Queue[ESL.Message]',
	log_all_events: bool = False,
) -> None:
	''' copy every event from the connection into queue, blocking when it's full; raises when the connection fails '''
	log = logger.getChild( 'pump_events' )
	async for event in esl.events( timeout = None ):
		if log_all_events:
			log.info( 'Event!\n%s', event.pretty() )
		await queue.put( event )
	raise ESL.HardError( 'event stream ended' )


#endregion event source
#region Engine


class Engine:
	def __init__( self, esl: ESL, config: Config ) -> None:
		self.esl = esl
		self.config = config
		self.registry = Registry()
		self.created = 0
		self.queue: 'asyncio.Queue[ESL.Message]' = asyncio.Queue( maxsize = config.queue_size )

	@property
	def completed( self ) -> int:
		return self.registry.completed

	async def new_call( self ) -> Call:
		call = await create_call( self.esl, self.config )
		self.registry.add( call )
		self.created += 1
		return call

	async def dispatch( self, event: ESL.Message ) -> None:
		log = logger.getChild( 'Engine.dispatch' )
		uuid = event.uuid
		if not uuid:
			log.log( DEBUG9, 'dropping %r without a Unique-ID', event.event_name )
			return
		call = self.registry.get( uuid )
		if call is not None:
			await call.on_event( self.esl, event )
		else:
			log.log( DEBUG9, 'dropping %r for unknown call %s', event.event_name, uuid )
		self.registry.sweep()

	async def on_tick( self ) -> bool:
		''' returns True once every call has been placed and finished '''
		log = logger.getChild( 'Engine.on_tick' )
		if self.created < self.config.total_calls:
			await self.new_call()
		if self.created >= self.config.total_calls and not self.registry:
			log.info( 'All calls done!' )
			return True
		return False

	async def run( self ) -> None:
		log = logger.getChild( 'Engine.run' )
		producer = asyncio.create_task( pump_events( self.esl, self.queue, self.config.log_all_events ))
		ticker = Ticker( self.config.interval )
		getter: Opt[asyncio.Task[ESL.Message]] = None
		tick: Opt[asyncio.Task[None]] = None
		try:
			if self.config.total_calls > 0:
				await self.new_call()
			while True:
				if getter is None:
					getter = asyncio.create_task( self.queue.get() )
				if tick is None:
					tick = asyncio.create_task( ticker.wait() )
				waitset: Set[asyncio.Future[object]] = { getter, tick, producer } # type: ignore
				done, _ = await asyncio.wait( waitset, return_when = asyncio.FIRST_COMPLETED )
				if getter in done:
					event = getter.result()
					getter = None
					await self.dispatch( event )
				if tick in done:
					tick = None
					if await self.on_tick():
						log.info( 'created %d call(s), %d completed', self.created, self.completed )
						return
				if producer in done:
					producer.result() # re-raises whatever killed the event reader
					raise ESL.HardError( 'event reader stopped' )
		finally:
			pending = [ task for task in ( getter, tick, producer ) if task is not None and not task.done() ]
			for task in pending:
				task.cancel()
			await asyncio.gather( *pending, return_exceptions = True )


#endregion Engine
