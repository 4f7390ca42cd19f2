# stdlib imports:
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
from typing import Dict, Optional as Opt

LEVELS = ( 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL' )

def _level( level: str ) -> int:
	assert level.isnumeric() or level in LEVELS, f'invalid level={level!r}'
	if level.isnumeric():
		return int( level )
	return int( getattr( logging, level ))

def init(
	logfile: Opt[Path],
	loglevels: Dict[str,str],
	level: str = 'INFO',
	journald: bool = False,
) -> None:
	logging.basicConfig(
		level = _level( level ),
		format = '%(asctime)s:%(levelname)s:%(name)s:%(message)s',
	)
	logging.addLevelName( 9, 'DEBUG9' )

	if journald:
		if sys.platform == 'win32':
			logging.getLogger( __name__ ).warning( 'journald logging is not available on windows' )
		else:
			try:
				from systemd.journal import JournaldLogHandler # pip install systemd
			except ImportError:
				logging.getLogger( __name__ ).warning( 'journald=true but JournaldLogHandler not found (pip install systemd)' )
			else:
				journald_handler = JournaldLogHandler()
				journald_handler.setFormatter(
					logging.Formatter( '[%(levelname)s] %(message)s' )
				)
				logging.getLogger( '' ).addHandler( journald_handler )

	if logfile is not None:
		logfile.parent.mkdir ( parents = True, exist_ok = True )
		trfh = TimedRotatingFileHandler(
			logfile,
			when = 'D',
			interval = 1,
			backupCount = 14,
		)
		trfh.setFormatter( logging.Formatter( '%(asctime)s:%(levelname)s:%(name)s:%(message)s' ))
		logging.getLogger( '' ).addHandler( trfh )

	for name, lvl in loglevels.items():
		logging.getLogger( name ).setLevel( _level( lvl ))
