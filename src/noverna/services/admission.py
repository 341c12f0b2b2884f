"""
Player Admission Service

Purpose
-------
Decides whether a connecting player may join. Consumes the ``user`` and
``penalty`` storages through the registry: validates the connection data,
loads or creates the user account and checks for an active penalty.

Design Notes
------------
- Every refusal carries a localised, player-facing message. Storage and
  database error text is logged, never shown to the player.
- A missing storage is reported with its numeric error code only.
- Touching ``last_connection`` is best effort; a failure there does not
  refuse the player.

Usage
-----
    admission = AdmissionService(context.registry)
    result = await admission.admit(license, None, player_name, locale="de")
    if not result.allowed:
        deferrals.done(result.message)
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from noverna.core.logging.logger import LogContext, get_logger
from noverna.services.messages import DEFAULT_LOCALE, ErrorCode, get_message
from noverna.storage.penalty import PenaltyStorage
from noverna.storage.registry import StorageRegistry
from noverna.storage.user import UserStorage

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,16}$")
LICENSE_PREFIXES = ("license2:", "license:")
IDENTIFIER_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    user: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    error_code: Optional[ErrorCode] = None


def normalize_license(license: Optional[str]) -> Optional[str]:
    """Strip a ``license:``/``license2:`` prefix; None when nothing usable remains."""
    if not isinstance(license, str):
        return None
    value = license.strip()
    for prefix in LICENSE_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    if not value or any(char.isspace() for char in value):
        return None
    return value


def generate_user_identifier(username: str, prefix: str = "user_", length: int = 12) -> str:
    suffix = "".join(secrets.choice(IDENTIFIER_ALPHABET) for _ in range(length))
    return f"{prefix}{username.lower()}_{suffix}"


def _format_until(expires_at: Any) -> str:
    if expires_at is None:
        return "-"
    if isinstance(expires_at, datetime):
        return expires_at.strftime("%Y-%m-%d %H:%M")
    return str(expires_at)


class AdmissionService:
    """
    Connection-time admission checks.

    Args:
        registry: Storage registry holding ``user`` and ``penalty``
    """

    def __init__(self, registry: StorageRegistry) -> None:
        self._registry = registry

    def _refuse(
        self,
        key: str,
        locale: str,
        error_code: ErrorCode,
        **fmt: Any,
    ) -> AdmissionResult:
        return AdmissionResult(
            allowed=False,
            message=get_message(key, locale, **fmt),
            error_code=error_code,
        )

    def _database_error(self, locale: str, step: str, error: Optional[str]) -> AdmissionResult:
        logger.error(
            "Admission failed at %s",
            step,
            extra={"operation": f"admission.{step}", "error": error},
        )
        return self._refuse("DATABASE_ERROR", locale, ErrorCode.DATABASE_ERROR)

    async def admit(
        self,
        license: Optional[str],
        identifier: Optional[str],
        username: Optional[str],
        locale: str = DEFAULT_LOCALE,
    ) -> AdmissionResult:
        """
        Run the admission checks for one connecting player.

        Args:
            license: Platform license (``license:`` prefix optional)
            identifier: Stable user identifier; generated for new users when None
            username: Display name of the player
            locale: Message locale (``en`` or ``de``)
        """
        if not isinstance(username, str) or not USERNAME_PATTERN.match(username):
            return self._refuse("INVALID_USERNAME", locale, ErrorCode.VALIDATION_ERROR)

        normalized = normalize_license(license)
        if normalized is None:
            return self._refuse("INVALID_LICENSE", locale, ErrorCode.VALIDATION_ERROR)

        users = self._registry.get("user") if self._registry.has("user") else None
        penalties = self._registry.get("penalty") if self._registry.has("penalty") else None
        if not isinstance(users, UserStorage) or not isinstance(penalties, PenaltyStorage):
            logger.error(
                "Admission storages unavailable",
                extra={"registered": self._registry.names()},
            )
            return self._refuse(
                "STORAGE_NOT_FOUND",
                locale,
                ErrorCode.STORAGE_NOT_FOUND,
                code=int(ErrorCode.STORAGE_NOT_FOUND),
            )

        with LogContext(license=normalized, operation="admission"):
            user, error = await users.get_by_license(normalized)
            if error:
                return self._database_error(locale, "load_user", error)

            if user is None:
                _, error = await users.create_user(
                    {
                        "license": normalized,
                        "username": username,
                        "identifier": identifier or generate_user_identifier(username),
                    }
                )
                if error:
                    return self._database_error(locale, "create_user", error)

                user, error = await users.get_by_license(normalized)
                if error:
                    return self._database_error(locale, "reload_user", error)

            if not user or user.get("id") is None:
                return self._database_error(locale, "resolve_user", "user row missing id")

            penalty, error = await penalties.get_active_penalty_by_user_id(user["id"])
            if error:
                return self._database_error(locale, "check_penalty", error)

            if penalty:
                logger.info(
                    "Banned player refused",
                    extra={"user_id": user["id"], "penalty_id": penalty.get("id")},
                )
                return AdmissionResult(
                    allowed=False,
                    user=user,
                    message=get_message(
                        "PLAYER_BANNED",
                        locale,
                        reason=penalty.get("reason") or "No reason specified",
                        until=_format_until(penalty.get("expires_at")),
                    ),
                    error_code=ErrorCode.PLAYER_BANNED,
                )

            _, error = await users.update_last_connection(normalized)
            if error:
                logger.warning(
                    "Could not update last connection",
                    extra={"user_id": user["id"], "error": error},
                )

            logger.info("Player '%s' admitted", username, extra={"user_id": user["id"]})
            return AdmissionResult(allowed=True, user=user)
