# stdlib imports:
import configparser
from dataclasses import dataclass, field
import datetime
import logging
from pathlib import Path
from typing import Dict, Optional as Opt

# local imports:
from ramp_logging import LEVELS

logger = logging.getLogger( __name__ )

DIAL_PREFIX = 'sofia/external/sip:'

DEFAULT_INI = '''\
[esl]
host = 127.0.0.1
port = 8021
password = ClueCon
tls = false

[ramp]
# calls are placed to sofia/external/sip:<destination>
destination = 18775437013@172.16.19.89:52173
audio_file = ivr-you_lose.wav
total_calls = 10
# one new call per interval
interval_ms = 200
queue_size = 32

[logging]
level = INFO
log_all_events = false
journald = false
# leave empty to only log to the console
logfile =

[loglevels]
# esl = WARNING
'''

class ConfigError( Exception ):
	pass

@dataclass( frozen = True )
class Config:
	destination: str
	audio_file: str
	total_calls: int = 10
	interval: datetime.timedelta = datetime.timedelta( milliseconds = 200 )
	queue_size: int = 32

	esl_host: str = '127.0.0.1'
	esl_port: int = 8021
	esl_password: str = 'ClueCon'
	esl_tls: bool = False

	log_all_events: bool = False
	loglevel: str = 'INFO'
	journald: bool = False
	logfile: Opt[Path] = None
	loglevels: Dict[str,str] = field( default_factory = dict )

	@property
	def dial_string( self ) -> str:
		return f'{DIAL_PREFIX}{self.destination}'

	def validate( self ) -> None:
		if not self.destination or ' ' in self.destination:
			raise ConfigError( f'invalid [ramp] destination={self.destination!r}' )
		if not self.audio_file or ' ' in self.audio_file:
			raise ConfigError( f'invalid [ramp] audio_file={self.audio_file!r}' )
		if self.total_calls < 0:
			raise ConfigError( f'invalid [ramp] total_calls={self.total_calls!r}' )
		if self.interval.total_seconds() <= 0:
			raise ConfigError( f'invalid [ramp] interval_ms={self.interval!r}' )
		if self.queue_size <= 0:
			raise ConfigError( f'invalid [ramp] queue_size={self.queue_size!r}' )
		if not 0 < self.esl_port < 65536:
			raise ConfigError( f'invalid [esl] port={self.esl_port!r}' )
		for name, level in [ ( '[logging] level', self.loglevel ) ] + [ ( f'[loglevels] {k}', v ) for k, v in self.loglevels.items() ]:
			if not ( level.isnumeric() or level in LEVELS ):
				raise ConfigError( f'invalid {name}={level!r}' )

def _getint( cp: configparser.ConfigParser, section: str, key: str ) -> int:
	try:
		return cp.getint( section, key )
	except ValueError as e:
		raise ConfigError( f'invalid [{section}] {key}: {e}' ) from None

def _getbool( cp: configparser.ConfigParser, section: str, key: str ) -> bool:
	try:
		return cp.getboolean( section, key )
	except ValueError as e:
		raise ConfigError( f'invalid [{section}] {key}: {e}' ) from None

def parse( text: str ) -> Config:
	cp = configparser.ConfigParser( interpolation = None )
	cp.read_string( DEFAULT_INI )
	try:
		cp.read_string( text )
	except configparser.Error as e:
		raise ConfigError( str( e )) from None

	logfile = cp.get( 'logging', 'logfile' ).strip()
	config = Config(
		destination = cp.get( 'ramp', 'destination' ).strip(),
		audio_file = cp.get( 'ramp', 'audio_file' ).strip(),
		total_calls = _getint( cp, 'ramp', 'total_calls' ),
		interval = datetime.timedelta( milliseconds = _getint( cp, 'ramp', 'interval_ms' )),
		queue_size = _getint( cp, 'ramp', 'queue_size' ),
		esl_host = cp.get( 'esl', 'host' ).strip(),
		esl_port = _getint( cp, 'esl', 'port' ),
		esl_password = cp.get( 'esl', 'password' ),
		esl_tls = _getbool( cp, 'esl', 'tls' ),
		log_all_events = _getbool( cp, 'logging', 'log_all_events' ),
		loglevel = cp.get( 'logging', 'level' ).strip().upper(),
		journald = _getbool( cp, 'logging', 'journald' ),
		logfile = Path( logfile ) if logfile else None,
		# configparser lower-cases keys, which is what logger names look like anyway
		loglevels = { k: v.strip().upper() for k, v in cp.items( 'loglevels' ) if k not in cp.defaults() },
	)
	config.validate()
	return config

def load( path: Path ) -> Config:
	log = logger.getChild( 'load' )
	if not path.is_file():
		path.parent.mkdir( parents = True, exist_ok = True )
		with path.open( 'w' ) as f:
			f.write( DEFAULT_INI )
		log.warning( 'wrote default settings to %s', path )
	with path.open( 'r' ) as f:
		return parse( f.read() )
