"""Whitelist APIs.

Routes:
- POST /api/registerWallet
- GET  /api/getUser?walletAddress=0x...
- GET  /api/leaderboard[?wallet=0x...]
- GET  /r/<referral_code>
- POST /api/verifyTelegram
- POST /api/verifyXFollow
"""

import logging

from flask import Blueprint, current_app, jsonify, request, session as flask_session

from errors import ConfigurationError, NotFoundError, UpstreamError, ValidationError
from extensions import limiter
from leaderboard import build_leaderboard, tier_for
from registration import lookup_user, normalize_referral_code, register_wallet
from storage import get_store
from tasks import all_tasks_completed
from verification import check_telegram_membership, check_x_follow


logger = logging.getLogger(__name__)

whitelist_api = Blueprint("whitelist_api", __name__)

SESSION_REF_KEY = "ref_code"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    return data


def _referral_link(code: str) -> str:
    base = (current_app.config.get("PUBLIC_BASE_URL") or request.host_url).rstrip("/")
    return f"{base}/?ref={code}"


@whitelist_api.post("/api/registerWallet")
@limiter.limit("10 per minute")
def register_wallet_route():
    data = _json_body()

    if current_app.config.get("WHITELIST_REQUIRE_TASKS") and not all_tasks_completed():
        raise ValidationError("Complete the mandatory tasks first")

    # An explicit code wins over one captured earlier via /r/<code>.
    referral_code = data.get("referralCode") or flask_session.get(SESSION_REF_KEY)

    result = register_wallet(get_store(), data.get("walletAddress"), referral_code)
    flask_session.pop(SESSION_REF_KEY, None)

    return jsonify({"success": True, **result.to_dict()}), 201


@whitelist_api.get("/api/getUser")
def get_user_route():
    wallet = request.args.get("walletAddress") or request.args.get("wallet")
    user = lookup_user(get_store(), wallet)
    if user is None:
        raise NotFoundError("User not found")

    return jsonify(
        {
            "success": True,
            "user": user.to_dict(),
            "tier": tier_for(user.referral_count),
            "referralLink": _referral_link(user.referral_code),
        }
    )


@whitelist_api.get("/api/leaderboard")
@limiter.exempt
def leaderboard_route():
    payload = build_leaderboard(get_store(), request.args.get("wallet"))
    return jsonify({"success": True, **payload}), 200, NO_CACHE_HEADERS


@whitelist_api.get("/r/<referral_code>")
def referral_onboarding(referral_code: str):
    """Remember a referral code for the registration that follows."""
    code = normalize_referral_code(referral_code)
    if not code:
        raise ValidationError("Referral code is required")

    valid = get_store().get_user_by_referral_code(code) is not None
    if valid:
        flask_session[SESSION_REF_KEY] = code

    return jsonify({"success": True, "referralCode": code, "validReferral": valid})


@whitelist_api.post("/api/verifyTelegram")
@limiter.limit("20 per minute")
def verify_telegram():
    data = _json_body()
    user_id = data.get("userId")
    username = data.get("username")

    if not user_id and not username:
        raise ValidationError("Missing user ID or username")

    bot_token = current_app.config.get("TELEGRAM_BOT_TOKEN")
    if not bot_token:
        raise ConfigurationError("Telegram bot token not configured", isMember=False)

    # getChatMember only accepts numeric ids.
    if not user_id or not str(user_id).strip().lstrip("-").isdigit():
        return jsonify({
            "isMember": False,
            "error": "Telegram User ID is required. Please get your User ID from @userinfobot on Telegram.",
        })

    try:
        result = check_telegram_membership(
            bot_token,
            current_app.config["TELEGRAM_CHAT_ID"],
            str(user_id).strip(),
            timeout=current_app.config["TELEGRAM_TIMEOUT_SECONDS"],
        )
    except UpstreamError as e:
        logger.warning("Telegram membership check failed: %s", e.message)
        return jsonify({"isMember": False, "error": e.message})

    return jsonify(result)


@whitelist_api.post("/api/verifyXFollow")
def verify_x_follow():
    data = _json_body()
    user_id = data.get("userId")
    access_token = data.get("accessToken")
    if not user_id or not access_token:
        raise ValidationError("Missing required parameters")
    return jsonify(check_x_follow(user_id, access_token))
