# ballotbox/routes.py

# HTTP surface for voters and the admin dashboard.
# Views stay thin: they parse input, call the election workflow and render JSON.

import json
import logging
from datetime import datetime, timezone

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from flask_jwt_extended import get_jwt_identity, set_access_cookies, unset_jwt_cookies
from flask_limiter.errors import RateLimitExceeded

from ballotbox import catalog, db, limiter
from ballotbox.authentication.rbac import UserRole, check_admin_credentials, issue_token, require_role
from ballotbox.errors import ElectionError, ErrorCode, StoreError, ValidationError
from ballotbox.operations.health_monitor import check_health
from ballotbox.services import get_services, get_workflow
from ballotbox.voting.results import export_results_csv, ranked_results, total_votes, winner

logger = logging.getLogger(__name__)

bp = Blueprint('ballotbox', __name__)

ADMIN_FAILURE_MESSAGE = ("The operation did not complete. The failure has been logged; "
                         "investigate before retrying.")


def _payload():
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(ErrorCode.INVALID_REQUEST, "Request body must be a JSON object")
    return payload


def _text_field(payload, name):
    value = payload.get(name)
    return value.strip() if isinstance(value, str) else value


def _client():
    return request.remote_addr or 'unknown'


def _admin_action(action, *args):
    """Run a destructive admin action; store failures get the investigate framing."""
    try:
        return action(*args, actor='admin')
    except StoreError as e:
        logger.error("Admin action %s failed", action.__name__)
        raise StoreError(ADMIN_FAILURE_MESSAGE) from e


# -- voter ------------------------------------------------------------------

@bp.route('/api/ballot', methods=['GET'])
def ballot():
    return jsonify({'positions': catalog.as_dict()})


@bp.route('/api/voters/validate', methods=['POST'])
@limiter.limit("30/minute")
def validate_unique_id():
    unique_id = _text_field(_payload(), 'unique_id')
    result = get_workflow().validate_unique_id(unique_id)
    return jsonify({
        'is_valid': result.is_valid,
        'is_available': result.is_available,
        'message': result.message,
    })


@bp.route('/api/voters/login', methods=['POST'])
@limiter.limit("10/minute")
def voter_login():
    payload = _payload()
    voter = get_workflow().login_or_register(_text_field(payload, 'email'), _text_field(payload, 'unique_id'))
    token = issue_token(voter.id, UserRole.VOTER)
    resp = jsonify({'voter': voter.to_dict(), 'access_token': token})
    set_access_cookies(resp, token)
    return resp


@bp.route('/api/votes', methods=['POST'])
@limiter.limit("5/minute")
@require_role(UserRole.VOTER)
def submit_votes():
    votes = _payload().get('votes')
    get_workflow().submit_votes(get_jwt_identity(), votes)
    return jsonify({'message': 'Vote cast successfully'}), 201


@bp.route('/api/logout', methods=['POST'])
@bp.route('/api/admin/logout', methods=['POST'])
def logout():
    resp = jsonify({'message': 'Logged out'})
    unset_jwt_cookies(resp)
    return resp


# -- admin ------------------------------------------------------------------

@bp.route('/api/admin/login', methods=['POST'])
@limiter.limit("10/minute")
def admin_login():
    services = get_services()
    client = _client()
    guard = services.admin_guard
    guard.clear_old_records()
    wait = guard.retry_after(client)
    if wait:
        error = 'LOCKED_OUT' if guard.is_blocked(client) else 'TOO_MANY_ATTEMPTS'
        return jsonify({'error': error,
                        'message': f'Too many attempts, try again in {wait} seconds.'}), 429, \
            {'Retry-After': str(wait)}

    payload = _payload()
    if not check_admin_credentials(payload.get('username'), payload.get('password')):
        services.admin_guard.record_failed_attempt(client)
        services.audit.log_event('admin_login_failed', {'ip': client})
        return jsonify({'error': 'INVALID_CREDENTIALS', 'message': 'Invalid username or password.'}), 401

    services.admin_guard.record_success(client)
    services.audit.log_event('admin_login', {'ip': client}, actor='admin')
    token = issue_token('admin', UserRole.ADMIN)
    resp = jsonify({'message': 'Logged in', 'access_token': token})
    set_access_cookies(resp, token)
    return resp


@bp.route('/api/results', methods=['GET'])
@require_role(UserRole.ADMIN)
def results():
    tally = get_workflow().get_tally()
    positions = []
    for position in catalog.ELECTION_POSITIONS:
        positions.append({
            'id': position.id,
            'title': position.title,
            'results': ranked_results(tally, position.id),
            'winner': winner(tally, position.id),
        })
    return jsonify({'tally': tally, 'positions': positions, 'total_votes': total_votes(tally)})


def _sse(tally, event='tally'):
    return f"event: {event}\ndata: {json.dumps(tally, sort_keys=True)}\n\n"


@bp.route('/api/results/stream', methods=['GET'])
@require_role(UserRole.ADMIN)
def results_stream():
    services = get_services()
    refresh = current_app.config['RESULTS_REFRESH_SECONDS']
    subscription = services.feed.subscribe()

    def recompute():
        # hand the connection back to the pool before waiting on the feed
        try:
            return services.workflow.get_tally()
        finally:
            db.session.remove()

    def events():
        try:
            tally = None
            while True:
                if tally is None:
                    # nothing pushed within the refresh window, recompute
                    try:
                        tally = recompute()
                    except StoreError as e:
                        yield _sse({'message': e.message}, event='error')
                        tally = subscription.next_tally(timeout=refresh)
                        continue
                yield _sse(tally)
                tally = subscription.next_tally(timeout=refresh)
        finally:
            services.feed.unsubscribe(subscription)
            if subscription.dropped:
                logger.debug("Results stream closed, %d stale tallies skipped", subscription.dropped)

    return Response(stream_with_context(events()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


@bp.route('/api/results/export.csv', methods=['GET'])
@require_role(UserRole.ADMIN)
def export_results():
    now = datetime.now(timezone.utc)
    body = export_results_csv(get_workflow().get_tally(), exported_at=now)
    filename = f"election-results-{now:%Y-%m-%d}.csv"
    return Response(body, mimetype='text/csv',
                    headers={'Content-Disposition': f'attachment; filename={filename}'})


@bp.route('/api/admin/voters', methods=['GET'])
@require_role(UserRole.ADMIN)
def list_voters():
    return jsonify({'voters': get_workflow().get_voter_status()})


@bp.route('/api/admin/voters', methods=['POST'])
@require_role(UserRole.ADMIN)
def add_voter():
    payload = _payload()
    voter_id = get_workflow().add_voter_id(
        _text_field(payload, 'unique_id'),
        voter_name=payload.get('voter_name'),
        issued_by='admin',
        notes=payload.get('notes'),
        actor='admin',
    )
    return jsonify({'unique_id': voter_id.unique_id, 'is_active': voter_id.is_active}), 201


@bp.route('/api/admin/voters/<unique_id>/active', methods=['PUT'])
@require_role(UserRole.ADMIN)
def set_voter_active(unique_id):
    active = _payload().get('active')
    if not isinstance(active, bool):
        raise ValidationError(ErrorCode.INVALID_REQUEST, "'active' must be true or false")
    _admin_action(get_workflow().set_voter_id_active, unique_id, active)
    return jsonify({'unique_id': unique_id, 'is_active': active})


@bp.route('/api/admin/voters/<unique_id>/votes', methods=['DELETE'])
@require_role(UserRole.ADMIN)
def delete_voter_votes(unique_id):
    deleted = _admin_action(get_workflow().delete_voter_votes, unique_id)
    return jsonify({'message': f'Votes for ID {unique_id} deleted', 'votes_deleted': deleted})


@bp.route('/api/admin/voters/<unique_id>', methods=['DELETE'])
@require_role(UserRole.ADMIN)
def delete_voter_account(unique_id):
    deleted = _admin_action(get_workflow().delete_voter_account, unique_id)
    return jsonify({'message': f'Account for ID {unique_id} deleted', 'votes_deleted': deleted})


@bp.route('/api/admin/voters/<unique_id>/confirmation', methods=['POST'])
@require_role(UserRole.ADMIN)
def resend_confirmation(unique_id):
    queued = get_workflow().resend_confirmation(unique_id, actor='admin')
    return jsonify({'unique_id': unique_id, 'queued': queued}), 202 if queued else 200


@bp.route('/api/admin/notifications', methods=['GET'])
@require_role(UserRole.ADMIN)
def notification_status():
    return jsonify(get_services().notifier.status())


@bp.route('/api/admin/notifications/test', methods=['POST'])
@require_role(UserRole.ADMIN)
def send_test_email():
    services = get_services()
    to = services.validator.normalize_email(_payload().get('email'))
    if not services.validator.validate_email(to):
        raise ValidationError(ErrorCode.INVALID_EMAIL, "Please enter a valid email address")
    sent = services.notifier.send_test_email(to)
    services.audit.log_event('test_email_sent', {'sent': sent}, actor='admin')
    return jsonify({'sent': sent, **services.notifier.status()})


@bp.route('/api/admin/votes', methods=['DELETE'])
@require_role(UserRole.ADMIN)
def reset_votes():
    deleted = _admin_action(get_workflow().reset_all_votes)
    return jsonify({'message': 'All votes reset', 'votes_deleted': deleted})


@bp.route('/health', methods=['GET'])
def health():
    res = check_health(current_app.config['AUDIT_LOG_DIR'])
    res['vote_feed'] = get_services().feed.stats()
    code = 200 if res['overall_ok'] else 503
    return jsonify(res), code


def register_error_handlers(app):
    @app.errorhandler(ElectionError)
    def election_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(RateLimitExceeded)
    def rate_limited(e):
        return jsonify({'error': 'RATE_LIMITED', 'message': 'Too many requests, slow down.'}), 429
