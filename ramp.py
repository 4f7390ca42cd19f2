#!/usr/bin/env python3
#region copyright


# This file is Copyright (C) 2022 ITAS Solutions LP, All Rights Reserved
# Contact ITAS Solutions LP at royce3@itas-solutions.com for licensing inquiries


#endregion copyright
#region imports


# stdlib imports:
import asyncio
import logging
from pathlib import Path
import sys
import time
from typing import List, Optional as Opt

# local imports:
from esl import ESL
import ramp_logging
from ramp_engine import Engine
import ramp_settings
from ramp_settings import Config, ConfigError


#endregion imports
#region globals


logger = logging.getLogger( __name__ )

DEFAULT_CONFIG_PATH = Path( 'ramp.ini' )

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


#endregion globals
#region bootstrap


async def _run( config: Config ) -> Engine:
	log = logger.getChild( '_run' )
	esl = ESL()
	try:
		await esl.connect_to(
			config.esl_host,
			config.esl_port,
			config.esl_password,
			tls = config.esl_tls,
		)
		# instruct freeswitch to send us ALL events
		await esl.event_json_all()
		engine = Engine( esl, config )
		log.info( 'placing %d call(s) to %s, one every %s', config.total_calls, config.dial_string, config.interval )
		await engine.run()
		return engine
	finally:
		log.debug( 'closing down connection' )
		await esl.close()

def main( argv: Opt[List[str]] = None ) -> int:
	log = logger.getChild( 'main' )
	args = sys.argv[1:] if argv is None else argv
	path = Path( args[0] ) if args else DEFAULT_CONFIG_PATH
	try:
		config = ramp_settings.load( path )
	except ( ConfigError, OSError ) as e:
		print( f'{path}: {e}', file = sys.stderr )
		return EXIT_CONFIG

	ramp_logging.init( config.logfile, config.loglevels, config.loglevel, config.journald )

	t0 = time.monotonic()
	try:
		engine = asyncio.run( _run( config ))
	except KeyboardInterrupt:
		log.warning( 'interrupted' )
		return EXIT_INTERRUPTED
	except ( ESL.Error, ESL.Disconnect, OSError, TimeoutError ) as e:
		log.critical( 'aborting: %r', e )
		return EXIT_FATAL
	except Exception:
		log.exception( 'Unexpected error:' )
		return EXIT_FATAL
	elapsed = time.monotonic() - t0
	log.info( 'finished: created=%d completed=%d elapsed=%.1fs', engine.created, engine.completed, elapsed )
	return EXIT_OK

if __name__ == '__main__':
	sys.exit( main() )


#endregion bootstrap
