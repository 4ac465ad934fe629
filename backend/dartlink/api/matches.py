from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user

from dartlink import db
from dartlink.errors import MatchError
from dartlink.services.matches import transitions


matches = Blueprint('matches', __name__)


@matches.errorhandler(MatchError)
def handle_match_error(exc: MatchError):
    db.session.rollback()
    current_app.logger.info(
        f"[rpc-error] path={request.path} user={getattr(current_user, 'id', None)} kind={exc.kind} code={exc.code} message={exc.message}"
    )
    return jsonify(exc.to_dict()), exc.status_code


@matches.route('', methods=['GET'])
@login_required
def list_matches():
    include_terminal = request.args.get('include_terminal') in ('1', 'true', 'yes')
    rows = transitions.list_matches_for_user(current_user.id, include_terminal=include_terminal)
    return jsonify([m.to_dict() for m in rows])


@matches.route('/pending-count', methods=['GET'])
@login_required
def pending_count():
    return jsonify({'count': transitions.pending_challenge_count(current_user.id)})


@matches.route('/challenge', methods=['POST'])
@login_required
def create_challenge():
    data = request.get_json(silent=True) or {}
    match = transitions.create_challenge(
        current_user.id,
        data.get('receiver_id'),
        data.get('game_type'),
        data.get('match_format'),
    )
    return jsonify(match.to_dict()), 201


@matches.route('/<string:match_id>', methods=['GET'])
@login_required
def get_match(match_id):
    return jsonify(transitions.get_match_for_user(match_id, current_user.id).to_dict())


@matches.route('/<string:match_id>/joined', methods=['GET'])
@login_required
def get_joined(match_id):
    return jsonify({'match_id': match_id, 'joined': transitions.has_joined(match_id, current_user.id)})


@matches.route('/<string:match_id>/accept', methods=['POST'])
@login_required
def accept_challenge(match_id):
    match = transitions.accept_challenge(match_id, current_user.id)
    return jsonify({'success': True, 'message': 'Challenge accepted', 'match': match.to_dict()})


@matches.route('/<string:match_id>/join', methods=['POST'])
@login_required
def join_match(match_id):
    match = transitions.join_match(match_id, current_user.id)
    return jsonify(match.to_dict())


@matches.route('/<string:match_id>/cancel', methods=['POST'])
@login_required
def cancel_match(match_id):
    match = transitions.cancel_match(match_id, current_user.id)
    return jsonify({'success': True, 'message': f'Match {match.status}', 'match': match.to_dict()})


@matches.route('/<string:match_id>/visit', methods=['POST'])
@login_required
def save_visit(match_id):
    data = request.get_json(silent=True) or {}
    match = transitions.save_visit(match_id, current_user.id, data.get('darts'))
    return jsonify(match.to_dict())


@matches.route('/<string:match_id>/expire', methods=['POST'])
@login_required
def expire_match(match_id):
    match = transitions.expire_match(match_id, current_user.id)
    return jsonify({'success': True, 'message': f'Match {match.status}', 'match': match.to_dict()})
