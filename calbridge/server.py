#!/usr/bin/env python3
"""
CalBridge Flask Server

HTTP surface for the event store: trigger a calendar sync, create events
(pushed to the provider immediately when it's reachable) and manage them.
"""

import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.serving import WSGIRequestHandler

from calbridge.config import DEFAULT_USER_ID, FLASK_HOST, FLASK_PORT
from calbridge.core.db_manager import DatabaseManager
from calbridge.errors import (
    CalBridgeError, EventNotFoundError, StoreFetchError, SyncInProgressError, ValidationError
)
from calbridge.organizers.event_manager import EventManager, serialize_event
from calbridge.sync.reconciler import CalendarReconciler


def _current_user() -> str:
    return request.headers.get('X-User-Id') or DEFAULT_USER_ID


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        if request.data:
            raise ValidationError("Request body must be valid JSON")
        return {}
    return body


def create_app(db: DatabaseManager = None, adapter=None) -> Flask:
    """Build the Flask app around a store and a calendar adapter."""
    app = Flask(__name__)
    logger = logging.getLogger('calbridge-server')

    if db is None:
        db = DatabaseManager()
    if adapter is None:
        from calbridge.adapters.factory import build_adapter
        adapter = build_adapter()

    reconciler = CalendarReconciler(db, adapter)
    events = EventManager(db, adapter)

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return jsonify({'error': str(e)}), 400

    @app.errorhandler(EventNotFoundError)
    def handle_not_found(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(SyncInProgressError)
    def handle_sync_in_progress(e):
        return jsonify({'error': str(e)}), 409

    @app.errorhandler(StoreFetchError)
    def handle_store_fetch_error(e):
        logger.error(f"❌ Sync aborted: {e}")
        return jsonify({'error': str(e)}), 500

    @app.errorhandler(CalBridgeError)
    def handle_calbridge_error(e):
        logger.error(f"❌ Request failed: {e}")
        return jsonify({'error': str(e)}), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"❌ Unhandled error: {e}")
        return jsonify({'error': str(e)}), 500


    @app.route('/api/calendar/sync', methods=['POST'])
    def sync_calendar():
        body = _json_body()
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        logger.info(f"🔄 Sync requested by {_current_user()}")
        result = reconciler.run_sync(
            calendars=body.get('calendars'),
            days_back=body.get('daysBack'),
            days_forward=body.get('daysForward'),
        )
        return jsonify(result.to_dict())

    @app.route('/api/calendar/events', methods=['POST'])
    def create_event():
        event = events.create_event(_json_body(), created_by=_current_user())
        return jsonify({'event': serialize_event(event)}), 201

    @app.route('/api/calendar/events', methods=['GET'])
    def list_events():
        rows = events.list_events(
            start=request.args.get('start') or None,
            end=request.args.get('end') or None,
            calendar_name=request.args.get('calendar') or None,
        )
        return jsonify({'events': [serialize_event(row) for row in rows]})

    @app.route('/api/calendar/events/<event_id>', methods=['GET'])
    def get_event(event_id):
        return jsonify({'event': serialize_event(events.get_event(event_id))})

    @app.route('/api/calendar/events/<event_id>', methods=['PUT'])
    def update_event(event_id):
        event = events.update_event(event_id, _json_body())
        return jsonify({'event': serialize_event(event)})

    @app.route('/api/calendar/events/<event_id>', methods=['DELETE'])
    def delete_event(event_id):
        events.delete_event(event_id)
        return jsonify({'success': True})

    @app.route('/status')
    def status():
        """Status endpoint for monitoring."""
        connected = db.test_connection()
        status_info = {
            'service': 'CalBridge',
            'status': 'active' if connected else 'degraded',
            'database_connected': connected,
            'calendar_backend': type(adapter).__name__,
        }
        if connected:
            stats = db.get_stats()
            status_info['events_count'] = stats.get('total_events', 0)
            status_info['by_sync_status'] = stats.get('by_sync_status', {})
        return jsonify(status_info)

    return app


# Disable Flask request logging to reduce noise
class NoLoggingWSGIRequestHandler(WSGIRequestHandler):
    def log_request(self, *args, **kwargs):
        pass


def main():
    """Run the Flask server."""
    import argparse

    from calbridge.logging_setup import configure_logging

    parser = argparse.ArgumentParser(description='CalBridge Flask Server')
    parser.add_argument('--port', type=int, default=FLASK_PORT,
                        help=f'Port to run server on (default: {FLASK_PORT})')
    parser.add_argument('--host', default=FLASK_HOST,
                        help=f'Host to bind to (default: {FLASK_HOST})')
    parser.add_argument('--debug', action='store_true',
                        help='Run in debug mode')
    args = parser.parse_args()

    configure_logging('DEBUG' if args.debug else 'INFO', quiet_http=not args.debug)

    app = create_app()

    print("🌐 Starting CalBridge Flask Server...")
    print(f"Host: {args.host}:{args.port}")
    print(f"Status page: http://{args.host}:{args.port}/status")

    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        request_handler=NoLoggingWSGIRequestHandler if not args.debug else None
    )


if __name__ == '__main__':
    main()
