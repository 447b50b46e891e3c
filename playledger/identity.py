"""Account identifier conversions and acting-user providers."""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping

from playledger.errors import ParseError
from playledger.parsers.metadata import coerce_int, current_login_user, parse_login_users

logger = logging.getLogger("playledger.identity")

STEAM_ID_BASE = 76561197960265728
_ACCOUNT_ID_MAX = 0xFFFFFFFF
_STEAM2_PATTERN = re.compile(r"^STEAM_[0-5]:([01]):(\d+)$", re.IGNORECASE)
_STEAM3_PATTERN = re.compile(r"^\[?U:1:(\d+)\]?$", re.IGNORECASE)


def account_id_to_steam_id(account_id: int) -> int | None:
    if not account_id:
        return None
    if account_id < 0 or account_id > _ACCOUNT_ID_MAX:
        raise ValueError(f"Account id out of range: {account_id}")
    return STEAM_ID_BASE + account_id


def steam_id_to_account_id(steam_id: int) -> int:
    account_id = steam_id - STEAM_ID_BASE
    if account_id < 0 or account_id > _ACCOUNT_ID_MAX:
        raise ValueError(f"Not an individual account id: {steam_id}")
    return account_id


def to_steam2(steam_id: int) -> str:
    account_id = steam_id_to_account_id(steam_id)
    return f"STEAM_0:{account_id & 1}:{account_id >> 1}"


def to_steam3(steam_id: int) -> str:
    return f"[U:1:{steam_id_to_account_id(steam_id)}]"


def resolve_user_id(raw: Any) -> int | None:
    """Map any known account id encoding to the canonical 64-bit id.

    Accepts 32-bit account ids (int, decimal or registry hex strings),
    64-bit ids, Steam2 and Steam3 renderings. Zero or blank means "nobody".
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        token = raw.strip()
        if not token:
            return None
        steam2 = _STEAM2_PATTERN.match(token)
        if steam2:
            return account_id_to_steam_id(int(steam2.group(2)) * 2 + int(steam2.group(1)))
        steam3 = _STEAM3_PATTERN.match(token)
        if steam3:
            return account_id_to_steam_id(int(steam3.group(1)))
    try:
        value = coerce_int(raw)
    except ValueError:
        logger.warning(f"Unrecognized account id {raw!r}")
        return None
    if not value:
        return None
    if value > _ACCOUNT_ID_MAX:
        steam_id_to_account_id(value)
        return value
    return account_id_to_steam_id(value)


class RegistryUserProvider:
    """Acting user from an opaque registry value map (``ActiveUser`` DWORD)."""

    def __init__(self, read_values: Callable[[], Mapping[str, Any]], key: str = "ActiveUser"):
        self._read_values = read_values
        self._key = key

    def current_user_id(self) -> int | None:
        values = self._read_values() or {}
        try:
            return resolve_user_id(values.get(self._key))
        except ValueError as exc:
            logger.warning(f"Ignoring active user value: {exc}")
            return None


class LoginUsersUserProvider:
    """Acting user from the most recent login record."""

    def __init__(self, source):
        self._source = source

    def current_user_id(self) -> int | None:
        try:
            users = parse_login_users(self._source.read_login_users())
        except ParseError as exc:
            logger.warning(f"Cannot read login users: {exc}")
            return None
        user = current_login_user(users)
        return user.steamId if user else None
