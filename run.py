#!/usr/bin/env python3
"""
Entry point for the League service.

Usage:
    python run.py                    # Run API + lifecycle sweeper
    python run.py sweeper            # Run only the lifecycle sweeper

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    SWEEPER_ENABLED: run the lifecycle sweeper alongside the API (default: true)
    LOG_LEVEL: logging level (default: INFO)
"""
import logging
import os
import sys

logger = logging.getLogger(__name__)


def configure_logging(level: str = 'INFO'):
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )


def run_api():
    """Run the API with the sweeper on a background thread."""
    from league.app import create_app

    app = create_app()
    configure_logging(app.config['LOG_LEVEL'])
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    if app.config['SWEEPER_ENABLED']:
        app.sweeper.start()
    try:
        logger.info(f"Starting League API on port {port}...")
        # The reloader would fork a second process with its own sweeper
        app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=False)
    finally:
        app.sweeper.stop()


def run_sweeper():
    """Run only the lifecycle sweeper, in the foreground."""
    from league.app import create_app

    app = create_app()
    configure_logging(app.config['LOG_LEVEL'])
    app.sweeper.start()
    try:
        while app.sweeper.running:
            app.sweeper.join(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        app.sweeper.stop()


if __name__ == '__main__':
    mode = sys.argv[1] if len(sys.argv) > 1 else 'api'

    if mode == 'api':
        run_api()
    elif mode == 'sweeper':
        run_sweeper()
    else:
        print(f"Unknown mode: {mode}")
        print("Usage: python run.py [api|sweeper]")
        sys.exit(1)
