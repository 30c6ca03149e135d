"""
Utility functions for the WhatsApp channel.
"""

import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional
from urllib.parse import urlparse

from whatsapp_pipeline.config import settings
from whatsapp_pipeline.schemas import Attachment, IncomingMessage

logger = logging.getLogger(__name__)


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """
    Twilio request signature: base64(HMAC-SHA1(auth_token, url + sorted key/value pairs)).
    """
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(auth_token: str, signature: str, url: str, params: Mapping[str, str]) -> bool:
    """
    Verify the X-Twilio-Signature header.

    Args:
        auth_token: TWILIO_AUTH_TOKEN
        signature: Value of the X-Twilio-Signature header
        url: The configured public webhook URL (what Twilio signed)
        params: Flat map of the POSTed form fields

    Returns:
        True if signature is valid, False otherwise
    """
    if not auth_token or not signature:
        return False

    expected_signature = compute_twilio_signature(auth_token, url, params)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode(), signature.encode())
    logger.debug(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def extract_attachments(payload: IncomingMessage) -> list[Attachment]:
    """
    Build the ordered attachment list from the indexed MediaUrl{N} fields.
    Entries without a URL are skipped.
    """
    attachments = []
    for index in range(payload.NumMedia or 0):
        media_url = payload.get_extra(f"MediaUrl{index}")
        if not media_url:
            continue
        content_type = payload.get_extra(f"MediaContentType{index}")
        attachments.append(
            Attachment(
                name=f"media-{index + 1}",
                url=media_url,
                contentType=content_type or "application/octet-stream",
            )
        )
    return attachments


def build_system_prompt(payload: IncomingMessage) -> str:
    return (
        f"{settings.ASSISTANT_SYSTEM_PROMPT}\n\n"
        "You are chatting with a WhatsApp user. Keep replies concise, single-message "
        "friendly, and formatted for WhatsApp. Reply with plain text, or with a JSON "
        'object containing a "message" string and optional "buttons" (short quick '
        'replies with "id" and "label"), optional "mediaUrl", and optional "location" '
        '("name", "latitude", "longitude", "label"). Do not include Markdown fences.\n\n'
        f"Profile Name: {payload.ProfileName or 'unknown'}"
    )


def webhook_url_warnings(webhook_url: Optional[str], route_path: str = "/webhook") -> list[str]:
    """
    Problems with the configured public webhook URL that would make every
    signature check fail. Empty list when the URL looks usable.
    """
    if not webhook_url or not webhook_url.strip():
        return ["TWILIO_WHATSAPP_WEBHOOK_URL is not configured"]

    warnings = []
    parsed = urlparse(webhook_url.strip())
    if parsed.scheme != "https":
        warnings.append("TWILIO_WHATSAPP_WEBHOOK_URL should use https")
    if not parsed.netloc:
        warnings.append("TWILIO_WHATSAPP_WEBHOOK_URL has no host")
    if not parsed.path.rstrip("/").endswith(route_path):
        warnings.append(f"TWILIO_WHATSAPP_WEBHOOK_URL does not point at {route_path}")
    return warnings
