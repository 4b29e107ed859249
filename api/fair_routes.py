"""
FAIRPLAY — Provably Fair HTTP API

Flask blueprint: /api/fair/*
Thin layer over the Ledger and Seed Manager. Every engine error becomes
{"error": reason} with the status carried by the exception type.

Public (no auth): seed commitments, outcome verification, session disclosure.
Player (signed session cookie): bets, wallets, deposit requests, history.
Operator (X-Admin-Token): player sign-in, seed rotation, deposit approval,
ledger audit.

The acting user is always the signed-in player, never a request field.
"""

import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, g, jsonify, request, session

from sim_engine.rmg import GAME_TYPES, get_game_adapter
from tools.fair_errors import FairPlayError, Forbidden, InvalidArgument
from tools.provably_fair import calculate_outcome, sha256_hex, verify_outcome
from tools.seed_manager import SeedManager

logger = logging.getLogger("fairplay.api")

fair_bp = Blueprint("fair", __name__, url_prefix="/api/fair")


def _services():
    return current_app.extensions["fairplay"]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidArgument("JSON object body required")
    return data


def operator_required(f):
    """Require X-Admin-Token to match FAIRPLAY_ADMIN_TOKEN."""
    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("FAIRPLAY_ADMIN_TOKEN", "")
        if not expected:
            # No token configured: operator routes stay locked
            logger.warning("FAIRPLAY_ADMIN_TOKEN not set, operator endpoint refused")
            return jsonify({"error": "Operator access is not configured"}), 403
        supplied = request.headers.get("X-Admin-Token", "")
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            logger.warning(f"Rejected operator call to {request.path} from {request.remote_addr}")
            return jsonify({"error": "Forbidden"}), 403
        return f(*args, **kwargs)
    return decorated


def current_player() -> str:
    return session.get("player", {}).get("id", "")


def player_required(f):
    """Require a signed-in player; the id lands in g.player_id."""
    @wraps(f)
    def decorated(*args, **kwargs):
        player_id = current_player()
        if not player_id:
            return jsonify({"error": "Sign-in required"}), 401
        g.player_id = player_id
        return f(*args, **kwargs)
    return decorated


def _player_body(required: bool = True) -> dict:
    """JSON body of a player call; a user_id naming someone else is refused."""
    if required or request.get_data():
        data = _json_body()
    else:
        data = {}
    claimed = data.pop("user_id", None)
    if claimed is not None and claimed != g.player_id:
        logger.warning(f"Player {g.player_id} tried to act as {claimed} on {request.path}")
        raise Forbidden("Cannot act for another player")
    return data


@fair_bp.errorhandler(FairPlayError)
def handle_fairplay_error(e):
    if e.http_status >= 500:
        logger.error(f"{request.method} {request.path} failed: {e.reason}")
    return jsonify({"error": e.reason}), e.http_status


# ─── Seeds ───

@fair_bp.route("/seed", methods=["GET"])
def active_seed():
    seed = _services()["seeds"].get_active_server_seed()
    return jsonify(SeedManager.public_view(seed))


@fair_bp.route("/seed/rotate", methods=["POST"])
@operator_required
def rotate_seed():
    seeds = _services()["seeds"]
    new_seed = seeds.rotate_server_seed()
    logger.info(f"Operator rotated server seed, now {new_seed.id}")
    return jsonify({"active": SeedManager.public_view(new_seed)})


@fair_bp.route("/seeds/<seed_id>", methods=["GET"])
def seed_detail(seed_id):
    seed = _services()["seeds"].get_seed_for_verification(seed_id)
    return jsonify(SeedManager.public_view(seed))


# ─── Verification ───

@fair_bp.route("/verify", methods=["POST"])
def verify():
    data = _json_body()
    server_seed = data.get("server_seed")
    client_seed = data.get("client_seed")
    nonce = data.get("nonce")
    if not isinstance(server_seed, str) or not isinstance(client_seed, str):
        raise InvalidArgument("server_seed and client_seed are required")
    computed = calculate_outcome(server_seed, client_seed, nonce)
    body = {
        "computed": computed.to_dict(),
        "seed_hash": sha256_hex(server_seed),
    }
    if "outcome" in data:
        body["valid"] = verify_outcome(server_seed, client_seed, nonce, data["outcome"])
    return jsonify(body)


@fair_bp.route("/sessions/<session_id>/verification", methods=["GET"])
def session_verification(session_id):
    return jsonify(_services()["ledger"].get_session_for_verification(session_id))


# ─── Players ───

@fair_bp.route("/players/<user_id>/login", methods=["POST"])
@operator_required
def player_login(user_id):
    """Operator-side sign-in: the response carries the player's session cookie."""
    if not user_id.strip():
        raise InvalidArgument("User id is required")
    session.clear()
    session["player"] = {"id": user_id}
    session.permanent = True
    logger.info(f"Player signed in: {user_id}")
    return jsonify({"player": user_id})


@fair_bp.route("/logout", methods=["POST"])
def player_logout():
    session.pop("player", None)
    return jsonify({"status": "signed_out"})


# ─── Betting ───

@fair_bp.route("/games", methods=["GET"])
def games():
    return jsonify({"games": [get_game_adapter(name).metadata() for name in GAME_TYPES]})


@fair_bp.route("/bet", methods=["POST"])
@player_required
def place_bet():
    data = _player_body()
    result = _services()["ledger"].place_bet(
        user_id=g.player_id,
        bet_amount=data.get("bet_amount"),
        currency=data.get("currency"),
        client_seed=data.get("client_seed"),
        target=data.get("target"),
        bet=data.get("bet"),
    )
    return jsonify(result.to_dict())


@fair_bp.route("/sessions", methods=["GET"])
@player_required
def player_sessions():
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        raise InvalidArgument("Limit must be a positive integer")
    sessions = _services()["ledger"].get_user_game_sessions(g.player_id, limit=limit)
    return jsonify({"sessions": [s.to_dict() for s in sessions], "count": len(sessions)})


# ─── Wallets & deposits ───

@fair_bp.route("/wallets", methods=["POST"])
@player_required
def open_wallets():
    data = _player_body(required=False)
    wallets = _services()["ledger"].open_wallets(g.player_id, data.get("currencies"))
    return jsonify({"wallets": [w.to_dict() for w in wallets]})


@fair_bp.route("/wallets", methods=["GET"])
@player_required
def wallets():
    return jsonify({"wallets": [w.to_dict() for w in _services()["ledger"].list_wallets(g.player_id)]})


@fair_bp.route("/wallets/<currency>", methods=["GET"])
@player_required
def wallet(currency):
    return jsonify(_services()["ledger"].get_wallet(g.player_id, currency).to_dict())


@fair_bp.route("/deposits", methods=["POST"])
@player_required
def request_deposit():
    data = _player_body()
    tx = _services()["ledger"].request_deposit(
        g.player_id, data.get("currency"), data.get("amount"),
        metadata=data.get("metadata"),
    )
    return jsonify(tx.to_dict()), 201


@fair_bp.route("/deposits/<tx_id>/approve", methods=["POST"])
@operator_required
def approve_deposit(tx_id):
    return jsonify(_services()["ledger"].approve_deposit(tx_id).to_dict())


@fair_bp.route("/deposits/<tx_id>/decline", methods=["POST"])
@operator_required
def decline_deposit(tx_id):
    return jsonify(_services()["ledger"].decline_deposit(tx_id).to_dict())


@fair_bp.route("/audit/<user_id>/<currency>", methods=["GET"])
@operator_required
def audit(user_id, currency):
    return jsonify(_services()["ledger"].audit_ledger(user_id, currency).to_dict())
