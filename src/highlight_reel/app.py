"""
Main highlight reel application.

Orchestrates:
- Tracking store: one row per uploaded video
- Status-change watcher: pushes a notification on terminal transitions
- Status projection: upload listing for the mobile client
- CLI: serve the webhook/API, submit a video, simulate the worker
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from flask import Flask
from flask_cors import CORS

from highlight_reel.api import create_api
from highlight_reel.config import Config
from highlight_reel.database import TrackingStore, TrackingStoreError, UploadStatus, WebhookTrigger
from highlight_reel.projection import StatusClient, StatusProjection
from highlight_reel.push import NotificationDispatcher
from highlight_reel.storage import create_object_store
from highlight_reel.upload import UploadError, UploadSubmitter
from highlight_reel.watcher import StatusChangeWatcher

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def build_tracking_store(config: Config) -> TrackingStore:
    store = TrackingStore(
        config.database.url,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )
    store.create_tables()
    return store


class HighlightReelServer:
    """
    Server side of the pipeline.

    Receives tracking-store row triggers over HTTP and serves the upload
    listing. Holds no per-upload state between requests.
    """

    def __init__(self, config: Config, tracking_store: Optional[TrackingStore] = None,
                 dispatcher: Optional[NotificationDispatcher] = None):
        self.config = config

        self.tracking_store = tracking_store or build_tracking_store(config)
        logger.info("Tracking store initialized")

        self.dispatcher = dispatcher or NotificationDispatcher.from_config(config.push)
        self.watcher = StatusChangeWatcher.from_config(config.push, self.dispatcher)
        self.projection = StatusProjection(self.tracking_store)

        self.app = self._create_app()
        logger.info("Flask app created")

    def _create_app(self) -> Flask:
        """Create and configure Flask application."""
        app = Flask(__name__)

        # Enable CORS for API
        CORS(app, resources={r"/api/*": {"origins": "*"}})

        api = create_api(
            watcher=self.watcher,
            projection=self.projection,
            webhook_secret=self.config.server.webhook_secret,
        )
        app.register_blueprint(api)

        return app

    def run(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Run the server (blocking)."""
        host = host or self.config.server.host
        port = port or self.config.server.port
        logger.info(f"Listening on {host}:{port}")
        self.app.run(host=host, port=port, debug=self.config.server.debug, threaded=True)


# =============================================================================
# CLI
# =============================================================================

def _serve(config: Config, args) -> int:
    server = HighlightReelServer(config)
    server.run(host=args.host, port=args.port)
    return 0


def _upload(config: Config, args) -> int:
    path = Path(args.file)
    size = path.stat().st_size if path.exists() else 0

    submitter = UploadSubmitter.from_config(
        config,
        create_object_store(config),
        build_tracking_store(config),
        push_token_provider=lambda: args.push_token,
    )

    def progress(percent: float):
        logger.info(f"Upload progress: {percent:.0f}%")

    try:
        record = submitter.submit(
            path,
            size,
            args.mime_type or config.upload.default_mime_type,
            args.owner,
            progress=progress,
        )
    except UploadError as e:
        logger.error(f"Upload failed: {e}")
        print(e.user_message or str(e), file=sys.stderr)
        return 1

    print(json.dumps(record.to_dict(), indent=2))
    return 0


def _set_status(config: Config, args) -> int:
    store = build_tracking_store(config)

    if args.webhook:
        store.add_update_listener(WebhookTrigger(args.webhook, config.server.webhook_secret))
    else:
        dispatcher = NotificationDispatcher.from_config(config.push)
        store.add_update_listener(StatusChangeWatcher.from_config(config.push, dispatcher))

    try:
        record = store.update_status(args.upload_id, UploadStatus(args.status))
    except TrackingStoreError as e:
        logger.error(f"Status update failed: {e}")
        print(str(e), file=sys.stderr)
        return 1

    print(json.dumps(record.to_dict(), indent=2))
    return 0


def _status(config: Config, args) -> int:
    if args.api:
        client = StatusClient(args.api)
        try:
            rows = client.rows(args.owner)
        finally:
            client.close()
    else:
        rows = StatusProjection(build_tracking_store(config)).rows(args.owner)

    for row in rows:
        retry = "  [Retry]" if row.can_retry else ""
        print(f"{row.created_at}  {row.label:<12} {row.size_label:>10}  {row.filename}{retry}")
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Highlight reel upload pipeline")
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
        default=None
    )
    parser.add_argument(
        "--debug",
        help="Enable debug logging",
        action="store_true"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the webhook / API server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", "-p", type=int, default=None)
    serve.set_defaults(handler=_serve)

    upload = commands.add_parser("upload", help="Submit a video")
    upload.add_argument("file")
    upload.add_argument("--owner", required=True)
    upload.add_argument("--mime-type", default=None)
    upload.add_argument("--push-token", default=None)
    upload.set_defaults(handler=_upload)

    set_status = commands.add_parser("set-status", help="Move an upload to a new status")
    set_status.add_argument("upload_id")
    set_status.add_argument("status", choices=[s.value for s in UploadStatus])
    set_status.add_argument("--webhook", default=None,
                            help="Forward the row trigger to this URL instead of handling it in-process")
    set_status.set_defaults(handler=_set_status)

    status = commands.add_parser("status", help="List a user's uploads")
    status.add_argument("--owner", required=True)
    status.add_argument("--api", default=None, help="Read through the server API at this URL")
    status.set_defaults(handler=_status)

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = Config.load(args.config)
    return args.handler(config, args)


if __name__ == "__main__":
    sys.exit(main())
