"""
Player-facing messages.

Localised texts shown to players when admission fails. Internal error
details never go into these strings; at most a numeric error code does.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict

from noverna.core.logging.logger import get_logger

logger = get_logger(__name__)

DEFAULT_LOCALE = "en"


class ErrorCode(IntEnum):
    # General (1000-1999)
    UNKNOWN_ERROR = 1000
    VALIDATION_ERROR = 1001
    # Player (2000-2999)
    PLAYER_NOT_FOUND = 2000
    PLAYER_BANNED = 2004
    # Database (3000-3999)
    DATABASE_ERROR = 3000
    MIGRATION_FAILED = 3003
    # Cache (4000-4999)
    CACHE_ERROR = 4000
    # Storage (5000-5999)
    STORAGE_NOT_FOUND = 5000
    STORAGE_NOT_READY = 5001


MESSAGES: Dict[str, Dict[str, str]] = {
    "de": {
        "STORAGE_NOT_FOUND": (
            "Ein interner Fehler ist aufgetreten. Bitte kontaktiere einen Administrator. "
            "[Fehlercode: {code}]"
        ),
        "PLAYER_BANNED": "Du wurdest vom Server gebannt. Grund: {reason} | Bis: {until}",
        "DATABASE_ERROR": "Datenbankfehler. Bitte versuche es später erneut.",
        "INVALID_LICENSE": (
            "Keine gültige Rockstar-Lizenz gefunden. "
            "Bitte stelle sicher, dass du GTA V legal besitzt."
        ),
        "INVALID_USERNAME": "Der Benutzername darf nur Buchstaben, Zahlen und Unterstriche enthalten (3-16 Zeichen).",
    },
    "en": {
        "STORAGE_NOT_FOUND": (
            "An internal error occurred. Please contact an administrator. "
            "[Error code: {code}]"
        ),
        "PLAYER_BANNED": "You have been banned from this server. Reason: {reason} | Until: {until}",
        "DATABASE_ERROR": "Database error. Please try again later.",
        "INVALID_LICENSE": "No valid Rockstar license found. Please ensure you own GTA V legally.",
        "INVALID_USERNAME": "Username can only contain letters, numbers and underscores (3-16 characters).",
    },
}


def get_message(key: str, locale: str = DEFAULT_LOCALE, **fmt: Any) -> str:
    """
    Look up ``key`` in ``locale`` (falling back to English) and format it.

    Unknown keys return the key itself. Missing placeholders leave the
    template unformatted.
    """
    catalogue = MESSAGES.get(locale) or MESSAGES[DEFAULT_LOCALE]
    template = catalogue.get(key) or MESSAGES[DEFAULT_LOCALE].get(key)
    if template is None:
        return key

    try:
        return template.format(**fmt)
    except (KeyError, IndexError) as exc:
        logger.warning(
            "Message placeholder missing",
            extra={"message_key": key, "locale": locale, "error": str(exc)},
        )
        return template
