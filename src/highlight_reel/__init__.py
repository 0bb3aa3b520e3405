"""
Highlight Reel upload pipeline.

Asynchronous upload-and-notify flow for game videos:
- Client submits a video to object storage and records a tracking row
- An external worker moves the row through processing to ready/failed
- The status-change watcher pushes a notification on terminal transitions
- The client re-reads the upload list to show current status
"""

__version__ = "1.0.0"


def create_app():
    """
    WSGI application factory.

    Used by gunicorn: gunicorn "highlight_reel:create_app()"
    """
    import os
    import logging
    from .config import Config
    from .app import HighlightReelServer, LOG_FORMAT

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger(__name__)

    config_path = os.environ.get('CONFIG_PATH')
    config = Config.load(config_path)

    logger.info("=" * 60)
    logger.info("Highlight Reel Server (WSGI)")
    logger.info("=" * 60)

    server = HighlightReelServer(config)
    return server.app
