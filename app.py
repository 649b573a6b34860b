# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

#!/usr/bin/env python3
"""
Exchange Calendar Sync - Service entry point and JSON control API
"""
import atexit
import logging
import signal
import sys
from types import SimpleNamespace

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

import config
from auth import MicrosoftAuth
from cal_ops.ews_reader import EwsCalendarReader
from cal_ops.reader import GraphCalendarReader
from cal_ops.writer import GraphCalendarWriter
from models import SourceType
from sync.engine import SyncEngine
from sync.scheduler import SyncScheduler
from sync.state_store import SyncStateRepository
from sync.status import SyncStatusTracker
from utils.logger import InMemoryLogHandler, configure_logging
from utils.timezone import utc_now

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = ('127.0.0.1', '::1', 'localhost')
DEGRADED_ERROR_RATE = 0.5


def _health_state(status) -> str:
    """'degraded' once more than half of all attempted writes have failed"""
    if status.last_sync_time is None:
        return 'healthy'
    attempted = status.total_items_synced + status.total_errors
    if attempted > 0 and status.total_errors / attempted > DEGRADED_ERROR_RATE:
        return 'degraded'
    return 'healthy'


def create_app(sync_engine: SyncEngine, scheduler: SyncScheduler, status_tracker: SyncStatusTracker,
               log_handler: InMemoryLogHandler = None, allow_remote: bool = None, debug: bool = None) -> Flask:
    """Build the Flask control surface around already-initialized components"""
    app = Flask(__name__)
    allow_remote = config.API_ALLOW_REMOTE if allow_remote is None else allow_remote
    debug = config.DEBUG if debug is None else debug

    @app.before_request
    def restrict_api_to_loopback():
        if request.path.startswith('/api/') and not allow_remote \
                and request.remote_addr not in LOOPBACK_ADDRESSES:
            logger.warning(f"Rejected API request from {request.remote_addr} to {request.path}")
            return jsonify({"error": "Forbidden"}), 403

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Cache-Control'] = 'no-store'
        return response

    @app.errorhandler(Exception)
    def handle_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description}), error.code

        logger.exception(f"Unhandled error on {request.method} {request.path}")
        body = {"error": "Internal server error"}
        if debug:
            body["detail"] = str(error)
        return jsonify(body), 500

    @app.route('/health')
    def health_check():
        """Health summary; always 200 so the body can say why"""
        status = status_tracker.get_status()
        return jsonify({
            "status": _health_state(status),
            "timestamp": utc_now().isoformat(),
            "service": "exchange-calendar-sync",
            "isRunning": status.is_running,
            "syncEnabled": status.sync_enabled,
            "schedulerRunning": scheduler.is_running(),
            "lastSyncTime": status.to_dict()['last_sync_time'],
            "totalItemsSynced": status.total_items_synced,
            "totalErrors": status.total_errors,
        }), 200

    @app.route('/api/sync/status')
    def sync_status():
        data = status_tracker.get_status().to_dict()
        data['scheduler_running'] = scheduler.is_running()
        data['last_sync_times'] = {
            mailbox: ts.isoformat() for mailbox, ts in sync_engine.last_sync_times().items()
        }
        return jsonify(data)

    @app.route('/api/sync/start', methods=['POST'])
    def start_sync():
        body = request.get_json(silent=True) or {}
        force_full_sync = bool(body.get('forceFullSync', False))

        if status_tracker.is_running():
            return jsonify({"started": False, "error": "Sync already in progress"}), 409

        if not scheduler.trigger_manual_sync(force_full_sync=force_full_sync):
            return jsonify({"started": False, "error": "Sync already in progress"}), 409

        return jsonify({"started": True, "forceFullSync": force_full_sync}), 202

    @app.route('/api/sync/toggle', methods=['POST'])
    def toggle_sync():
        body = request.get_json(silent=True) or {}
        enabled = body.get('enabled')
        if enabled is None:
            enabled = not status_tracker.is_sync_enabled()
        elif not isinstance(enabled, bool):
            return jsonify({"error": "'enabled' must be a boolean"}), 400

        status_tracker.set_sync_enabled(enabled)
        return jsonify({"syncEnabled": enabled})

    @app.route('/api/sync/restart', methods=['POST'])
    def restart_scheduler():
        scheduler.restart()
        return jsonify({"message": "Scheduler restarted", "schedulerRunning": scheduler.is_running()})

    @app.route('/api/logs')
    def get_logs():
        if log_handler is None:
            return jsonify({"logs": [], "count": 0})

        try:
            limit = int(request.args.get('limit', 200))
        except ValueError:
            return jsonify({"error": "'limit' must be an integer"}), 400

        records = log_handler.get_records(
            min_level=request.args.get('level'),
            mapping=request.args.get('mapping'),
            limit=limit,
        )
        return jsonify({"logs": records, "count": len(records)})

    return app


def build_components():
    """Load settings, build and initialize every component. Raises on bad configuration."""
    log_handler = configure_logging(config.LOG_LEVEL, config.STRUCTURED_LOGGING, config.LOG_BUFFER_SIZE)

    logger.info("🚀 Starting Exchange Calendar Sync")
    mappings = config.load_mailbox_mappings()
    config.validate_settings(mappings)

    for mapping in mappings:
        logger.info(f"  - {mapping.display_name}: {mapping.source_mailbox} ({mapping.source_type.value}) "
                    f"-> {mapping.destination_mailbox}")

    sources = {}
    if any(m.source_type == SourceType.EXCHANGE_ON_PREMISE for m in mappings):
        sources[SourceType.EXCHANGE_ON_PREMISE] = EwsCalendarReader(
            config.EWS_SERVER_URL, config.EWS_USERNAME, config.EWS_PASSWORD,
            domain=config.EWS_DOMAIN, verify_ssl=config.EWS_VERIFY_SSL,
        )
    if any(m.source_type == SourceType.EXCHANGE_ONLINE for m in mappings):
        sources[SourceType.EXCHANGE_ONLINE] = GraphCalendarReader(MicrosoftAuth(
            config.SOURCE_TENANT_ID, config.SOURCE_CLIENT_ID, config.SOURCE_CLIENT_SECRET, label='source',
        ))

    destination = GraphCalendarWriter(MicrosoftAuth(
        config.TENANT_ID, config.CLIENT_ID, config.CLIENT_SECRET, label='destination',
    ))

    for source in sources.values():
        source.initialize()
    destination.initialize()

    status_tracker = SyncStatusTracker()
    state_repository = SyncStateRepository(config.DATA_PATH, enabled=config.ENABLE_STATE_PERSISTENCE)
    sync_engine = SyncEngine(sources, destination, status_tracker, state_repository)
    scheduler = SyncScheduler(sync_engine, status_tracker, lambda: mappings)

    return SimpleNamespace(
        mappings=mappings,
        sync_engine=sync_engine,
        scheduler=scheduler,
        status_tracker=status_tracker,
        state_repository=state_repository,
        log_handler=log_handler,
    )


def create_production_app() -> Flask:
    """gunicorn entry point: build components, start the scheduler, return the app"""
    components = build_components()
    components.scheduler.start()
    atexit.register(components.scheduler.stop)

    return create_app(components.sync_engine, components.scheduler,
                      components.status_tracker, components.log_handler)


def main():
    components = build_components()
    app = create_app(components.sync_engine, components.scheduler,
                     components.status_tracker, components.log_handler)

    def signal_handler(signum, frame):
        logger.warning(f"Received signal {signum}, initiating graceful shutdown...")
        components.scheduler.stop()
        logger.info("Graceful shutdown completed")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    components.scheduler.start()
    logger.info(f"Starting calendar sync service on port {config.PORT}")
    app.run(host='0.0.0.0', port=config.PORT)


if __name__ == '__main__':
    main()
