"""Social verification helpers.

Telegram membership goes through the Bot API getChatMember method.
X follow verification needs OAuth and is not implemented: it always reports
"not following".
"""

import json
import logging
from urllib import parse as urlparse
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from errors import UpstreamError


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# getChatMember statuses that count as "joined"; left/kicked/restricted do not.
MEMBER_STATUSES = ("member", "administrator", "creator")


def _telegram_get(bot_token: str, method: str, params: dict, timeout: float) -> dict:
    url = f"{TELEGRAM_API_BASE}/bot{bot_token}/{method}?{urlparse.urlencode(params)}"
    req = urlrequest.Request(url, headers={"Accept": "application/json"})
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except HTTPError as e:
        # The Bot API answers 4xx with a JSON body ({"ok": false, "description": ...}).
        raw = e.read().decode("utf-8", errors="replace")
        if not raw:
            raise UpstreamError(f"Telegram API error: HTTP {e.code}")
    except (URLError, OSError) as e:
        raise UpstreamError(f"Telegram API error: {getattr(e, 'reason', e)}")

    try:
        return json.loads(raw)
    except ValueError:
        raise UpstreamError("Telegram API returned an invalid response")


def check_telegram_membership(bot_token: str, chat_id: str, user_id, timeout: float = 10) -> dict:
    """Return {isMember, status, userId} or {isMember: False, error}.

    Raises UpstreamError when the API cannot be reached or decoded.
    """
    data = _telegram_get(bot_token, "getChatMember", {"chat_id": chat_id, "user_id": user_id}, timeout)

    if data.get("ok"):
        result = data.get("result") or {}
        status = result.get("status")
        return {
            "isMember": status in MEMBER_STATUSES,
            "status": status,
            "userId": (result.get("user") or {}).get("id"),
        }

    logger.info("Telegram getChatMember refused for user %s: %s", user_id, data.get("description"))
    return {
        "isMember": False,
        "error": data.get("description") or "Failed to verify membership. Make sure you have joined the channel.",
    }


def check_x_follow(user_id, access_token) -> dict:
    # TODO: call the X API v2 following-lookup endpoint once OAuth 2.0 login exists.
    return {
        "isFollowing": False,
        "message": "X verification requires OAuth integration",
    }
