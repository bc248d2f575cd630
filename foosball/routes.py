from datetime import datetime, timezone

import psycopg2
from flask import Blueprint, current_app, jsonify, redirect, request, url_for, abort

from .datastore_pg import ParticipantInUseError
from .months import (
    InvalidMonthError,
    compute_month_options,
    filter_by_month,
    is_all,
    month_bounds,
    parse_month_key,
    parse_played_at,
)
from .standings import MatchValidationError, compute_standings, match_fields, validate_match


bp = Blueprint('main', __name__)

DATASTORE_KEY = 'foosball.datastore'

_DEFAULT_EMOJI = {'player': '👤', 'team': '👥'}
_PARTICIPANT_LABEL = {'player': 'Player', 'team': 'Team'}


class PayloadError(ValueError):
    """Request body or query string failed validation."""


def _store():
    return current_app.extensions[DATASTORE_KEY]


def _filter_arg(name: str):
    """Return a query-string filter value; empty or ``all`` means no filter."""
    value = (request.args.get(name) or '').strip()
    if not value or value == 'all':
        return None
    return value


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise PayloadError("Request body must be a JSON object")
    return payload


def _month_arg():
    value = (request.args.get('month') or '').strip()
    return 'all' if is_all(value) else value


# -- error mapping ---------------------------------------------------------

@bp.errorhandler(MatchValidationError)
def _invalid_match(exc):
    body = {'error': str(exc)}
    if exc.index is not None:
        body['index'] = exc.index
    if exc.match_id is not None:
        body['match_id'] = exc.match_id
    return body, 400


@bp.errorhandler(InvalidMonthError)
@bp.errorhandler(PayloadError)
def _bad_request(exc):
    return {'error': str(exc)}, 400


@bp.errorhandler(ParticipantInUseError)
def _participant_in_use(exc):
    return {
        'error': str(exc),
        'match_count': exc.match_count,
        'team_count': exc.team_count,
    }, 409


@bp.errorhandler(psycopg2.Error)
def _database_error(exc):
    current_app.logger.exception("Database error while handling %s %s", request.method, request.path)
    return {'error': 'Database error'}, 500


@bp.app_errorhandler(404)
def _not_found(_exc):
    return {'error': 'Not found'}, 404


@bp.app_errorhandler(405)
def _method_not_allowed(_exc):
    return {'error': 'Method not allowed'}, 405


# -- health ----------------------------------------------------------------

@bp.route('/health')
def health():
    return {'status': 'ok', 'message': 'Server is running'}


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status.
    """
    try:
        info = _store().ping()
    except Exception as e:  # pragma: no cover - best-effort health output
        return {
            'connected': False,
            'status': 'error',
            'error': str(e),
        }
    return {'connected': True, 'status': 'ok', **info}


# -- participants ----------------------------------------------------------

def _member_ids(payload: dict, current) -> list:
    """Resolve team members from ``players`` or ``player1_id``/``player2_id``.

    Members not mentioned in the body keep their ``current`` values.
    """
    players = payload.get('players')
    if players is not None:
        if not isinstance(players, list) or len(players) > 2:
            raise PayloadError("players must be a list of at most two player ids")
        if players:
            return [p or None for p in players] + [None] * (2 - len(players))
    return [
        (payload.get(key) or None) if key in payload else current[idx]
        for idx, key in enumerate(('player1_id', 'player2_id'))
    ]


def _participant_payload(kind: str, payload: dict, existing=None) -> dict:
    """Build the writable fields; keys absent from ``payload`` keep ``existing`` values."""
    existing = existing or {}
    if 'name' in payload or not existing:
        name = str(payload.get('name') or '').strip()
        if not name:
            raise PayloadError(f"{_PARTICIPANT_LABEL[kind]} name is required")
    else:
        name = existing['name']
    if 'emoji' in payload:
        emoji = str(payload.get('emoji') or '').strip() or _DEFAULT_EMOJI[kind]
    else:
        emoji = existing.get('emoji') or _DEFAULT_EMOJI[kind]
    if kind == 'player':
        if 'nickname' in payload:
            nickname = str(payload.get('nickname') or '').strip() or None
        else:
            nickname = existing.get('nickname')
        return {'name': name, 'nickname': nickname, 'emoji': emoji}

    member_ids = _member_ids(payload, [existing.get('player1_id'), existing.get('player2_id')])
    for pid in member_ids:
        if pid is not None and not isinstance(pid, str):
            raise PayloadError("Player ids must be strings")
    if member_ids[0] and member_ids[0] == member_ids[1]:
        raise PayloadError("A team needs two different players")
    store = _store()
    for pid in member_ids:
        if pid and store.get_participant('player', pid) is None:
            raise PayloadError(f"Unknown player: {pid}")
    return {
        'name': name,
        'emoji': emoji,
        'player1_id': member_ids[0],
        'player2_id': member_ids[1],
    }


@bp.route('/api/players', defaults={'kind': 'player'})
@bp.route('/api/teams', defaults={'kind': 'team'})
def list_participants(kind):
    return jsonify(_store().list_participants(kind))


@bp.route('/api/players', methods=['POST'], defaults={'kind': 'player'})
@bp.route('/api/teams', methods=['POST'], defaults={'kind': 'team'})
def create_participant(kind):
    fields = _participant_payload(kind, _json_body())
    created = _store().create_participant(kind, fields)
    return created, 201


@bp.route('/api/players/<participant_id>', defaults={'kind': 'player'})
@bp.route('/api/teams/<participant_id>', defaults={'kind': 'team'})
def get_participant(kind, participant_id):
    participant = _store().get_participant(kind, participant_id)
    if participant is None:
        abort(404)
    return participant


@bp.route('/api/players/<participant_id>', methods=['PUT'], defaults={'kind': 'player'})
@bp.route('/api/teams/<participant_id>', methods=['PUT'], defaults={'kind': 'team'})
def update_participant(kind, participant_id):
    store = _store()
    existing = store.get_participant(kind, participant_id)
    if existing is None:
        abort(404)
    fields = _participant_payload(kind, _json_body(), existing)
    updated = store.update_participant(kind, participant_id, fields)
    if updated is None:
        abort(404)
    return updated


@bp.route('/api/teams/<participant_id>/players')
def team_players(participant_id):
    team = _store().get_participant('team', participant_id)
    if team is None:
        abort(404)
    return {'team': team, 'players': team['players']}


@bp.route('/api/players/<participant_id>', methods=['DELETE'], defaults={'kind': 'player'})
@bp.route('/api/teams/<participant_id>', methods=['DELETE'], defaults={'kind': 'team'})
def delete_participant(kind, participant_id):
    if not _store().delete_participant(kind, participant_id):
        abort(404)
    return {'success': True}


# -- matches ---------------------------------------------------------------

def _match_payload(kind: str, payload: dict, existing=None) -> dict:
    """Coerce a request body into a validated match record.

    On update, fields missing from the body keep their ``existing`` values;
    on create, scores default to 0 and ``played_at`` to now.
    """
    fields = match_fields(kind)
    existing = existing or {}
    match = {
        key: payload.get(key) or existing.get(key)
        for key in (fields['a'], fields['b'])
    }
    for key in (fields['score_a'], fields['score_b']):
        raw = payload.get(key)
        if raw is None or raw == '':
            raw = existing.get(key, 0)
        if isinstance(raw, bool):
            raise PayloadError(f"{key} must be an integer")
        try:
            match[key] = int(raw)
        except (TypeError, ValueError):
            raise PayloadError(f"{key} must be an integer") from None
    match['played_at'] = (
        payload.get('played_at')
        or existing.get('played_at')
        or datetime.now(timezone.utc).isoformat()
    )
    validate_match(match, kind)
    match['played_at'] = parse_played_at(match['played_at'])

    store = _store()
    for key in (fields['a'], fields['b']):
        if store.get_participant(kind, match[key]) is None:
            raise PayloadError(f"Unknown {kind}: {match[key]}")
    return match


@bp.route('/api/matches', defaults={'kind': 'player'})
@bp.route('/api/team-matches', defaults={'kind': 'team'})
def list_matches(kind):
    fields = match_fields(kind)
    month = _month_arg()
    matches = _store().list_matches(
        kind,
        side_a=_filter_arg(fields['a']),
        side_b=_filter_arg(fields['b']),
        participant=_filter_arg('participant_id'),
        month=None if month == 'all' else parse_month_key(month),
    )
    return jsonify(matches)


@bp.route('/api/matches', methods=['POST'], defaults={'kind': 'player'})
@bp.route('/api/team-matches', methods=['POST'], defaults={'kind': 'team'})
def create_match(kind):
    match = _match_payload(kind, _json_body())
    return _store().create_match(kind, match), 201


@bp.route('/api/matches/<match_id>', defaults={'kind': 'player'})
@bp.route('/api/team-matches/<match_id>', defaults={'kind': 'team'})
def get_match(kind, match_id):
    match = _store().get_match(kind, match_id)
    if match is None:
        abort(404)
    return match


@bp.route('/api/matches/<match_id>', methods=['PUT'], defaults={'kind': 'player'})
@bp.route('/api/team-matches/<match_id>', methods=['PUT'], defaults={'kind': 'team'})
def update_match(kind, match_id):
    store = _store()
    existing = store.get_match(kind, match_id)
    if existing is None:
        abort(404)
    match = _match_payload(kind, _json_body(), existing)
    updated = store.update_match(kind, match_id, match)
    if updated is None:
        abort(404)
    return updated


@bp.route('/api/matches/<match_id>', methods=['DELETE'], defaults={'kind': 'player'})
@bp.route('/api/team-matches/<match_id>', methods=['DELETE'], defaults={'kind': 'team'})
def delete_match(kind, match_id):
    if not _store().delete_match(kind, match_id):
        abort(404)
    return {'success': True}


@bp.route('/api/matches/active-months', defaults={'kind': 'player'})
@bp.route('/api/team-matches/active-months', defaults={'kind': 'team'})
def active_months(kind):
    return jsonify(compute_month_options(_store().list_matches(kind)))


@bp.route('/api/matches/month/<int:year>/<int:month>', defaults={'kind': 'player'})
@bp.route('/api/team-matches/month/<int:year>/<int:month>', defaults={'kind': 'team'})
def matches_by_month(kind, year, month):
    try:
        month_bounds(year, month)
    except InvalidMonthError:
        return {'error': 'Invalid month or year format'}, 400
    return jsonify(_store().list_matches(kind, month=(year, month)))


# -- standings -------------------------------------------------------------

def _standings_snapshot(kind: str, month: str):
    """Fetch roster + matches once and compute standings over that snapshot."""
    store = _store()
    participants = store.list_participants(kind)
    matches = store.list_matches(kind)
    warnings: list[dict] = []
    table = compute_standings(participants, matches, month_filter=month, kind=kind, warnings=warnings)
    for w in warnings:
        current_app.logger.warning(
            "standings_skipped_match kind=%s match_id=%s participant_id=%s",
            kind,
            w.get('match_id'),
            w.get('participant_id'),
        )
    return participants, matches, table


@bp.route('/api/matches/consolidated', defaults={'kind': 'player'})
@bp.route('/api/team-matches/consolidated', defaults={'kind': 'team'})
def consolidated(kind):
    """Everything the standings page needs in one round trip."""
    month = _month_arg()
    participants, matches, table = _standings_snapshot(kind, month)
    payload = {
        'activeMonths': compute_month_options(matches),
        'selectedMonth': month,
    }
    if kind == 'player':
        payload.update(
            {
                'matches': filter_by_month(matches, month),
                'players': participants,
                'playerStats': table,
            }
        )
    else:
        payload.update(
            {
                'teamMatches': filter_by_month(matches, month),
                'teams': participants,
                'teamStats': table,
                'players': _store().list_participants('player'),
            }
        )
    return payload


@bp.route('/api/matches/config', defaults={'kind': 'player'})
@bp.route('/api/team-matches/config', defaults={'kind': 'team'})
def consolidated_config(kind):
    return redirect(url_for('main.consolidated', kind=kind))


@bp.route('/api/stats')
def stats():
    kind = (request.args.get('type') or '').strip()
    if kind not in ('player', 'team'):
        return {'error': 'Valid type parameter is required (player or team)'}, 400
    _participants, _matches, table = _standings_snapshot(kind, _month_arg())
    return jsonify(table)
