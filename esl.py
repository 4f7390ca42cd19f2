from __future__ import annotations

# stdlib imports:
import asyncio
import certifi
import datetime
import json
import logging
import ssl
from typing import (
	Any, Dict, List, Optional as Opt, overload, Tuple, TypeVar, Union,
)
from typing_extensions import AsyncIterator, Literal
from urllib.parse import unquote as urllib_unquote

logger = logging.getLogger( __name__ )

DEBUG9 = 9

UUID_BROADCAST_LEG = Literal['aleg','bleg','holdb','both']

REPLY_CONTENT_TYPES = (
	'auth/request',
	'command/reply',
	'api/response',
	'text/rude-rejection',
)

class ESL:
	_reader: asyncio.StreamReader
	_writer: Opt[asyncio.StreamWriter] = None
	_event_queue: asyncio.Queue[ESL.Message]
	_requests: asyncio.Queue[ESL.Request]
	request_timeout = datetime.timedelta( seconds = 10 )

	class Disconnect( Exception ):
		pass

	class Error( Exception ):
		pass

	class SoftError( Error ):
		" any error that doesn't require closing the connection "

	class NotOkay( SoftError ):
		" body of an api response did not start with +OK "

	class HardError( Error ):
		" Errors that probably require you to close and reconnect "

	class AuthFailure( HardError ):
		pass

	class Message:
		content_type: Opt[str] = None
		when_event: datetime.datetime
		when_rcvd: datetime.datetime

		def __init__( self, *,
			headers: Dict[str,str],
			raw: Opt[bytes] = None,
			body: str = '',
		) -> None:
			self.raw = raw
			self.headers = headers
			self.body = body

		@overload
		def header( self, key: str, default: str ) -> str: ...

		@overload
		def header( self, key: str, default: Opt[str] = None ) -> Opt[str]: ...

		def header( self,
			key: str,
			default: Opt[str] = None,
		) -> Opt[str]:
			value = self.headers.get( key )
			if value is not None:
				return value
			# FreeSWITCH isn't consistent about case ( Unique-ID vs Unique-Id )
			folded = key.casefold()
			for k, v in self.headers.items():
				if k.casefold() == folded:
					return v
			return default

		@property
		def event_name( self ) -> Opt[str]:
			return self.header( 'Event-Name' )

		@property
		def uuid( self ) -> Opt[str]:
			return self.header( 'Unique-ID' )

		def content_length( self ) -> Opt[int]:
			content_length = self.header( 'Content-Length' )
			if content_length is None:
				return None
			try:
				return int( content_length )
			except ValueError as e:
				raise ESL.HardError(
					f'Error parsing Content-Length {content_length!r}: {e!r}'
				).with_traceback( e.__traceback__ ) from None

		def on_yield( self ) -> None:
			pass

		@classmethod
		def parse( cls, buf: bytes ) -> Tuple[Opt[ESL.Message],bytes]:
			hdr_len = buf.find( b'\n\n' )
			if -1 == hdr_len:
				return None, buf
			raw_hdrs = buf[:hdr_len]
			body_off = hdr_len + 2
			msg = ESL.Message(
				headers = ESL.Message._parse_headers( raw_hdrs.decode( 'utf-8', 'replace' )),
				raw = raw_hdrs, # will replace later if we discover a body
			)
			body_len = msg.content_length() or 0
			msg_len = body_off + body_len
			if len( buf ) < msg_len:
				return None, buf
			msg.raw = buf[:msg_len]
			msg.body = msg.raw[body_off:].decode( 'utf-8', 'replace' )
			return msg, buf[msg_len:]

		@staticmethod
		def _parse_headers(
			hdrs: str,
		) -> Dict[str,str]:
			headers: Dict[str,str] = {}
			for line in hdrs.split( '\n' ):
				ar = line.split( ':', 1 )
				if len( ar ) == 2:
					key = urllib_unquote( ar[0].strip() )
					val = urllib_unquote( ar[1].strip() )
					headers[key] = val
			return headers

		@staticmethod
		def _parse_json_headers( body: str ) -> Tuple[Dict[str,str],str]:
			try:
				data: Any = json.loads( body )
			except ValueError as e:
				raise ESL.HardError( f'Error parsing json event: {e!r}' ) from None
			if not isinstance( data, dict ):
				raise ESL.HardError( f'json event is not an object: {body[:80]!r}' )
			evt_body = str( data.pop( '_body', '' ))
			return { str( k ): str( v ) for k, v in data.items() }, evt_body

		def pretty( self ) -> str:
			lines: List[str] = [ f'{k}: {v}' for k, v in sorted( self.headers.items() ) ]
			if self.body:
				lines.append( f'BODY: {self.body}' )
			return '\n'.join( lines )

		def __repr__( self ) -> str:
			cls = type( self )
			ar = [ f'{cls.__module__}.{cls.__qualname__}(' ]
			ar.append( f'headers={self.headers!r}, raw={self.raw!r}, body={self.body!r})' )
			return ''.join( ar )

	class DisconnectEvent( Message ):
		def __init__( self ) -> None:
			super().__init__( headers = {} )

		def on_yield( self ) -> None:
			raise ESL.Disconnect()

	class ErrorEvent( Message ):
		def __init__( self, exc: Exception ) -> None:
			super().__init__( headers = {} )
			self.exc = exc

		def on_yield( self ) -> None:
			raise self.exc from None

	RequestType = TypeVar( 'RequestType', bound = 'Request' )
	class Request:
		raw: Opt[bytes] = None
		err: Opt[Exception] = None
		command_required = True
		waits_forever = False

		def __init__( self, cli: ESL, command: Opt[str] = None ) -> None:
			self.command = command
			self.reply: Opt[ESL.Message] = None
			if command:
				assert '\n' not in command, f'invalid command={command!r}'
				self.raw = f'{command}\n\n'.encode()
				cli._assert_alive()
			else:
				assert not self.command_required, f'{type(self).__name__} created with invalid command={command!r}'
			self.trigger = asyncio.Event()

		async def wait( self: ESL.RequestType, timeout: Opt[Union[int,float]] = None ) -> ESL.RequestType:
			if timeout is None and not self.waits_forever:
				timeout = ESL.request_timeout.total_seconds()
			await asyncio.wait_for( self.trigger.wait(), timeout = timeout )
			if self.err is not None:
				raise self.err
			return self

		def on_reply( self, reply: ESL.Message ) -> None:
			reply_text = reply.header( 'Reply-Text' ) or ''
			if reply_text.startswith( '-ERR' ):
				raise ESL.SoftError( reply_text )
			elif reply.body.startswith( '-ERR' ):
				raise ESL.SoftError( reply.body )

		def __repr__( self ) -> str:
			cls = type( self )
			return f'{cls.__module__}.{cls.__qualname__}(command={self.command!r}, reply={self.reply!r})'

	class HelloRequest( Request ):
		command_required = False

		def on_reply( self, reply: ESL.Message ) -> None:
			content_type = reply.header( 'Content-Type' )
			if content_type != 'auth/request':
				raise ESL.HardError( f'expecting auth/request but got content_type={content_type!r}' )

	class AuthRequest( Request ):
		def on_reply( self, reply: ESL.Message ) -> None:
			reply_text = reply.header( 'Reply-Text' ) or ''
			if not reply_text.startswith( '+OK' ):
				raise ESL.AuthFailure( reply_text )

	class ApiRequest( Request ):
		waits_forever = True # originate doesn't reply until the callee answers or the switch gives up
		_value: Opt[str] = None

		@property
		def value( self ) -> str:
			assert self._value is not None, 'call request.wait() first'
			return self._value

		def on_reply( self, reply: ESL.Message ) -> None:
			body = reply.body or ''
			if not body.startswith( '+OK' ):
				raise ESL.NotOkay( f'{self.command!r} -> {body.strip() or reply.header( "Reply-Text" )!r}' )
			self._value = body

		def __repr__( self ) -> str:
			cls = type( self )
			return f'{cls.__module__}.{cls.__qualname__}(command={self.command!r}, value={self._value!r})'

	def __init__( self ) -> None:
		self.lock = asyncio.Lock()
		self._reader_alive = asyncio.Event()
		self._reader_task_: Opt[asyncio.Task[None]] = None

	async def connect_to( self,
		host: Opt[str] = None,
		port: Opt[int] = None,
		pwd: Opt[str] = None,
		tls: bool = False,
		timeout_seconds: Union[int,float] = 3,
		tls_check_hostname: bool = True,
		tls_cafile: Opt[str] = None,
	) -> None:
		log = logger.getChild( 'ESL.connect_to' )

		host = host or '127.0.0.1'
		port = port or 8021
		pwd = pwd or 'ClueCon'

		self._event_queue = asyncio.Queue()
		self._requests = asyncio.Queue()

		ctx: Opt[ssl.SSLContext] = None
		if tls:
			ctx = ssl.SSLContext( ssl.PROTOCOL_TLS_CLIENT )
			ctx.verify_mode = ssl.CERT_REQUIRED
			ctx.check_hostname = tls_check_hostname
			ctx.load_verify_locations( cafile = tls_cafile or certifi.where() )

		try:
			hello = ESL.HelloRequest( self, None )
			await self._requests.put( hello )
			log.debug( 'connecting to host=%r port=%r', host, port )
			self._reader, self._writer = await asyncio.wait_for(
				asyncio.open_connection( host, port, ssl = ctx ),
				timeout = timeout_seconds,
			)
		except Exception:
			# connection wasn't entirely successful, so kill the socket
			await self._close()
			raise

		self._reader_task_ = asyncio.create_task( self._reader_task() )
		await asyncio.wait_for( self._reader_alive.wait(), timeout = timeout_seconds )

		log.debug( 'waiting for hello' )
		await hello.wait( timeout = timeout_seconds )
		log.debug( 'sending auth' )
		await self.auth( pwd )
		log.info( 'authenticated to %s:%s', host, port )

	# BEGIN requests:

	async def api( self, command: str ) -> ESL.ApiRequest:
		assert isinstance( command, str ) and len( command ), f'invalid command={command!r}'
		return await self._send( ESL.ApiRequest( self, f'api {command}' ))

	async def auth( self, pwd: str ) -> ESL.Request:
		return await self._send( ESL.AuthRequest( self, f'auth {pwd}' ))

	async def event_json_all( self ) -> ESL.Request:
		return await self._send( ESL.Request( self, 'event json ALL' ))

	async def originate( self,
		dial_string: str,
		app: str = '&park',
	) -> ESL.ApiRequest:
		assert isinstance( dial_string, str ) and ' ' not in dial_string, f'invalid dial_string={dial_string!r}'
		assert app.startswith( '&' ), f'invalid app={app!r}'
		return await self.api( f'originate {dial_string} {app}' )

	async def sched_hangup( self,
		uuid: str,
		seconds: int = 1,
	) -> ESL.ApiRequest:
		assert isinstance( uuid, str ) and len( uuid ) == 36, f'invalid uuid={uuid!r}'
		assert isinstance( seconds, int ) and seconds >= 0, f'invalid seconds={seconds!r}'
		return await self.api( f'sched_hangup +{seconds} {uuid}' )

	async def uuid_broadcast( self,
		uuid: str,
		path: str,
		leg: UUID_BROADCAST_LEG,
	) -> ESL.ApiRequest:
		assert isinstance( uuid, str ) and len( uuid ) == 36, f'invalid uuid={uuid!r}'
		assert isinstance( path, str ) and len( path ) > 0 and ' ' not in path, f'invalid path={path!r}'
		return await self.api( f'uuid_broadcast {uuid} {path} {leg}' )

	# END requests ^^^^

	def _assert_alive( self ) -> None:
		if not self._reader_alive.is_set():
			if self.closed:
				raise ESL.Disconnect()
			else:
				raise ESL.HardError( 'reader is not alive' )

	async def events( self, timeout: Opt[Union[int,float]] = 0.25 ) -> AsyncIterator[ESL.Message]:
		''' yields events as they arrive; returns after timeout seconds of silence, or never if timeout is None '''
		while True:
			if self._event_queue.empty():
				self._assert_alive()
			try:
				event = await asyncio.wait_for( self._event_queue.get(), timeout = timeout )
			except asyncio.TimeoutError:
				return
			else:
				event.on_yield()
				yield event

	async def _send( self, req: ESL.RequestType ) -> ESL.RequestType:
		log = logger.getChild( 'ESL._send' )
		if req.raw:
			async with self.lock:
				log.log( DEBUG9, 'XMIT %r', req.raw )
				writer = self._writer
				if writer is None:
					raise EOFError( 'socket closed' )
				await self._requests.put( req )
				writer.write( req.raw )
				await writer.drain()
				await req.wait()
		elif not isinstance( req, ESL.HelloRequest ):
			log.error( 'ignoring %s.raw=%s b/c falsy', type( req ).__name__, req.raw )
		return req

	async def _reader_task( self ) -> None:
		log = logger.getChild( 'ESL._reader_task' )
		log.log( DEBUG9, 'starting up' )
		self._reader_alive.set()
		buf: bytes = b''
		reader = self._reader # if ESL object gets closed and reopened, this reader is done
		try:
			while reader is not None and reader == self._reader:
				try:
					data = await reader.read( 16384 )
					if not data:
						log.debug( 'got EOF' )
						await self._event_queue.put( ESL.ErrorEvent( ESL.HardError( 'EOF' )))
						return
					else:
						log.log( DEBUG9, 'data=%r', data )
						buf = await self._reader_parse_bytes( buf + data )
				except asyncio.CancelledError:
					raise
				except Exception as e:
					log.exception( 'Unexpected error:' )
					await self._event_queue.put( ESL.ErrorEvent( ESL.HardError( repr( e )).with_traceback( e.__traceback__ )))
					return
		finally:
			self._reader_alive.clear()
			self._fail_pending( ESL.HardError( 'connection reader stopped' ))

	def _fail_pending( self, exc: Exception ) -> None:
		# wake anybody still waiting on a reply that will never come
		while True:
			try:
				request = self._requests.get_nowait()
			except asyncio.QueueEmpty:
				return
			if not request.trigger.is_set():
				request.err = exc
				request.trigger.set()

	async def _reader_parse_bytes( self, buf: bytes ) -> bytes:
		log = logger.getChild( 'ESL._reader_parse_bytes' )
		while True:
			msg, buf = ESL.Message.parse( buf )
			if msg is None:
				return buf
			log.log( DEBUG9, 'msg=%r', msg )
			content_type = msg.header( 'Content-Type' )
			log.log( DEBUG9, 'content_type=%r', content_type )

			if content_type in REPLY_CONTENT_TYPES:
				try:
					request = self._requests.get_nowait()
				except asyncio.QueueEmpty:
					raise ESL.HardError( f'{content_type} when not expecting one' ) from None
				request.reply = msg
				try:
					request.on_reply( msg )
				except ESL.Error as e:
					request.err = e # NOTE: will be rethrown from Request.wait()
				request.trigger.set()
			elif content_type in ( 'text/event-plain', 'text/event-json' ):
				evt = msg
				evt.content_type = content_type
				if content_type == 'text/event-json':
					evt.headers, evt.body = ESL.Message._parse_json_headers( evt.body )
				else:
					evt_hdrs, _, evt_body = evt.body.partition( '\n\n' )
					evt.headers = ESL.Message._parse_headers( evt_hdrs )
					evt.body = evt_body
				try:
					evt.when_event = datetime.datetime.fromtimestamp( float( evt.headers['Event-Date-Timestamp'] ) * 0.000001 )
				except Exception:
					log.debug( 'Error parsing event timestamp of %r', evt.event_name )
					evt.when_event = datetime.datetime.now() # fake it 'til you make it
				evt.when_rcvd = datetime.datetime.now()
				await self._event_queue.put( evt )
			else:
				if content_type == 'text/disconnect-notice':
					await self._event_queue.put( ESL.DisconnectEvent() )
					continue
				elif content_type is None:
					errmsg = 'event missing content-type'
				else:
					errmsg = f'Unknown content-type: {content_type!r}'
				log.warning( errmsg )
				await self._event_queue.put( ESL.ErrorEvent( ESL.HardError( errmsg )))

	@property
	def closed( self ) -> bool:
		return self._writer is None

	async def close( self ) -> None:
		''' this method attempts to tell FreeSWITCH we're going away '''
		log = logger.getChild( 'ESL.close' )
		if self._writer is not None:
			try:
				if self._reader_alive.is_set():
					await self._send( ESL.Request( self, 'exit' ))
			except ESL.Disconnect:
				pass
			except Exception as e1:
				log.warning( 'Error trying to shut down connection: %r', e1 )
			finally:
				await self._close()

	async def _close( self ) -> None:
		''' this method actually does the process of closing down and cleaning up the socket connection '''
		log = logger.getChild( 'ESL._close' )
		writer = self._writer
		self._writer = None
		if writer is not None:
			try:
				writer.close()
				await writer.wait_closed()
			except Exception as e:
				log.warning( 'Error trying to close writer: %r', e )
		task = self._reader_task_
		self._reader_task_ = None
		if task is not None and not task.done():
			task.cancel()

