import os
import json
import logging
from datetime import timedelta
from flask import Flask, request, jsonify, Response
from sqlalchemy.exc import SQLAlchemyError

from shared.pubsub import LocalPubSub, PubSubClient
from .config import config
from .models import db
from .catalog import TournamentCatalog
from .ledger import RegistrationLedger
from .feed import AvailabilityFeed
from .locks import TournamentLocks
from .allocator import CapacityAllocator
from .transitions import Actor, StatusTransitionService
from .validation import LeaderInfo, ParticipantInfo
from .errors import ErrorCode, HTTP_STATUS, TransientStoreError

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, overrides: dict = None) -> Flask:
    """Application factory for the registration service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config.get(config_name, config['default']))
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Initialize extensions
    db.init_app(app)

    # Initialize services
    if app.config['FEED_BACKEND'] == 'redis':
        pubsub = PubSubClient(app.config['REDIS_URL'])
    else:
        pubsub = LocalPubSub(queue_size=app.config['FEED_SUBSCRIBER_QUEUE_SIZE'])

    locks = TournamentLocks()
    ledger = RegistrationLedger()
    feed = AvailabilityFeed(pubsub, poll_interval=app.config['FEED_POLL_INTERVAL'])

    # Create tables
    with app.app_context():
        db.create_all()
        if app.config.get('SEED_CATALOG'):
            TournamentCatalog().seed_catalog()

    # Store services on app for access in routes
    app.pubsub = pubsub
    app.catalog = TournamentCatalog()
    app.ledger = ledger
    app.feed = feed
    app.allocator = CapacityAllocator(
        feed, locks, ledger,
        enforce_formats=app.config['ENFORCE_FIELD_FORMATS']
    )
    app.transitions = StatusTransitionService(feed, locks, ledger)

    register_error_handlers(app)
    register_api_routes(app)

    logger.info(f"Registration service configured ({config_name}, feed={app.config['FEED_BACKEND']})")
    return app


def current_actor() -> Actor:
    """Identity forwarded by the upstream identity provider."""
    return Actor(
        user_id=request.headers.get('X-Actor-Id', '').strip(),
        is_admin=request.headers.get('X-Actor-Admin', 'false').strip().lower() == 'true'
    )


def json_object():
    """Request body as a dict. An empty body reads as {}, any other non-object as None."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    return data if isinstance(data, dict) else None


def error_response(code: ErrorCode, message: str, **extra):
    body = {'ok': False, 'error': code.value, 'message': message}
    body.update(extra)
    return jsonify(body), HTTP_STATUS[code]


def register_error_handlers(app: Flask):

    @app.errorhandler(TransientStoreError)
    def handle_store_error(e: TransientStoreError):
        return jsonify(e.to_dict()), HTTP_STATUS[e.code]


def register_api_routes(app: Flask):
    """Register API routes."""

    # ==================== Catalog & Availability ====================

    @app.route('/api/v1/tournaments', methods=['GET'])
    def api_list_tournaments():
        """List tournaments with their current availability."""
        active_only = request.args.get('active', 'false').lower() == 'true'
        tournaments = app.catalog.list_tournaments(active_only=active_only, game=request.args.get('game'))

        items = []
        for t in tournaments:
            data = t.to_dict()
            availability = app.feed.availability(t.key)
            data['availability'] = availability.to_dict() if availability else None
            items.append(data)

        return jsonify({'tournaments': items, 'count': len(items)})

    @app.route('/api/v1/tournaments/<tournament_id>', methods=['GET'])
    def api_get_tournament(tournament_id: str):
        tournament = app.catalog.get(tournament_id)
        if not tournament:
            return error_response(ErrorCode.TOURNAMENT_NOT_FOUND, 'Tournament not found')

        return jsonify(tournament.to_dict())

    @app.route('/api/v1/tournaments/<tournament_id>/availability', methods=['GET'])
    def api_availability(tournament_id: str):
        """Point-in-time slot counts. Also the fallback for clients without a stream."""
        availability = app.feed.availability(tournament_id)
        if availability is None:
            return error_response(ErrorCode.TOURNAMENT_NOT_FOUND, 'Tournament not found')

        data = availability.to_dict()
        data['tournament_id'] = str(app.catalog.get(tournament_id).key)
        return jsonify(data)

    @app.route('/api/v1/tournaments/<tournament_id>/availability/stream')
    def api_availability_stream(tournament_id: str):
        """SSE endpoint: current availability on connect, then every change."""
        tournament = app.catalog.get(tournament_id)
        if not tournament:
            return error_response(ErrorCode.TOURNAMENT_NOT_FOUND, 'Tournament not found')

        key = tournament.key
        keepalive = app.config['FEED_KEEPALIVE_SECONDS']

        def snapshot():
            with app.app_context():
                return app.feed.availability(key)

        subscription = app.feed.subscribe(key, snapshot_fn=snapshot)

        def generate():
            try:
                yield f"data: {json.dumps({'type': 'connected', 'tournament_id': str(key), 'live': subscription.live})}\n\n"
                for availability in subscription.stream(timeout=keepalive):
                    if availability is None:
                        yield ": keepalive\n\n"
                        continue
                    payload = {'type': 'availability', 'tournament_id': str(key)}
                    payload.update(availability.to_dict())
                    yield f"data: {json.dumps(payload)}\n\n"
            finally:
                subscription.close()

        return Response(generate(), mimetype='text/event-stream', headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no'
        })

    @app.route('/api/v1/tournaments/<tournament_id>/stats', methods=['GET'])
    def api_tournament_stats(tournament_id: str):
        if not current_actor().is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Admin role required')

        stats = app.ledger.tournament_stats(tournament_id)
        if stats is None:
            return error_response(ErrorCode.TOURNAMENT_NOT_FOUND, 'Tournament not found')
        return jsonify(stats)

    # ==================== Registration ====================

    @app.route('/api/v1/tournaments/<tournament_id>/registrations', methods=['POST'])
    def api_submit_registration(tournament_id: str):
        """Claim a slot. The form layer has already stored any screenshot."""
        data = json_object()
        if data is None:
            return error_response(ErrorCode.VALIDATION_ERROR, 'Request body must be a JSON object')

        participants = data.get('participants') or []
        if not isinstance(participants, list) or not isinstance(data.get('leader') or {}, dict):
            return error_response(ErrorCode.VALIDATION_ERROR, 'Malformed registration payload')

        result = app.allocator.submit(
            tournament_id,
            LeaderInfo.from_dict(data.get('leader')),
            data.get('payment_ref'),
            [ParticipantInfo.from_dict(p if isinstance(p, dict) else {}) for p in participants],
            team_name=data.get('team_name'),
            payment_screenshot_ref=data.get('payment_screenshot_ref')
        )

        if not result.accepted:
            return jsonify(result.to_dict()), HTTP_STATUS[result.error]
        return jsonify(result.to_dict()), 201

    # ==================== Admin review ====================

    @app.route('/api/v1/registrations/<registration_id>/status', methods=['POST'])
    def api_transition(registration_id: str):
        data = json_object()
        if data is None:
            return error_response(ErrorCode.VALIDATION_ERROR, 'Request body must be a JSON object')

        result = app.transitions.transition(
            registration_id,
            current_actor(),
            data.get('status'),
            reason=data.get('reason')
        )

        if not result.ok:
            return jsonify(result.to_dict()), HTTP_STATUS[result.error]
        return jsonify(result.to_dict())

    @app.route('/api/v1/registrations/status', methods=['POST'])
    def api_transition_batch():
        """Best-effort batch: every id is processed, failures are reported."""
        data = json_object()
        ids = data.get('registration_ids') if data is not None else None
        if not isinstance(ids, list) or not ids:
            return error_response(ErrorCode.VALIDATION_ERROR, 'registration_ids must be a non-empty list')

        actor = current_actor()
        if not actor.is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Admin role required')

        batch = app.transitions.transition_many(
            [str(rid) for rid in ids],
            actor,
            data.get('status'),
            reason=data.get('reason')
        )
        return jsonify(batch.to_dict()), 200 if batch.ok else 207

    # ==================== Admin read projections ====================

    @app.route('/api/v1/registrations', methods=['GET'])
    def api_list_registrations():
        if not current_actor().is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Admin role required')

        limit = request.args.get('limit', 50, type=int)
        offset = request.args.get('offset', 0, type=int)

        registrations = app.ledger.list_registrations(
            tournament_key=request.args.get('tournament_id'),
            status=request.args.get('status'),
            search=request.args.get('search'),
            limit=limit,
            offset=offset
        )

        return jsonify({
            'registrations': [r.to_dict() for r in registrations],
            'count': len(registrations),
            'limit': limit,
            'offset': offset
        })

    @app.route('/api/v1/registrations/stale', methods=['GET'])
    def api_stale_registrations():
        """Pending registrations still holding a slot after `older_than_hours` (default 24)."""
        if not current_actor().is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Admin role required')

        older_than_hours = request.args.get('older_than_hours', 24, type=float)
        if not 0 <= older_than_hours <= 24 * 365:
            return error_response(ErrorCode.VALIDATION_ERROR, 'older_than_hours must be between 0 and 8760')

        registrations = app.ledger.list_stale_pending(timedelta(hours=older_than_hours))
        return jsonify({
            'registrations': [r.to_dict(include_participants=False) for r in registrations],
            'count': len(registrations),
            'older_than_hours': older_than_hours
        })

    @app.route('/api/v1/registrations/<registration_id>', methods=['GET'])
    def api_get_registration(registration_id: str):
        if not current_actor().is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Admin role required')

        registration = app.ledger.get_registration(registration_id)
        if not registration:
            return error_response(ErrorCode.NOT_FOUND, 'Registration not found')
        return jsonify(registration.to_dict())

    @app.route('/api/v1/audit', methods=['GET'])
    def api_audit_log():
        if not current_actor().is_admin:
            return error_response(ErrorCode.UNAUTHORIZED, 'Admin role required')

        entries = app.ledger.list_audit_entries(
            registration_id=request.args.get('registration_id'),
            limit=request.args.get('limit', 100, type=int)
        )
        return jsonify({
            'entries': [e.to_dict() for e in entries],
            'count': len(entries)
        })

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        pubsub_ok = app.pubsub.ping()

        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False

        # The feed degrades to polling without pub/sub, so only the database is fatal
        status = 'healthy' if db_ok else 'unhealthy'
        code = 200 if db_ok else 503

        return jsonify({
            'status': status,
            'pubsub': 'connected' if pubsub_ok else 'disconnected',
            'database': 'connected' if db_ok else 'disconnected'
        }), code
