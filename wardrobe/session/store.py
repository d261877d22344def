"""JSON-backed session storage for the signed-in user."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

_USER_ID_CLAIMS = ("UserId", "userId", "sub")


@dataclass(slots=True)
class Session:
    """Tokens and identity persisted between launches."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user_id: Optional[str] = None


def user_id_from_token(token: str) -> Optional[str]:
    """Extract the user id claim from an access token without verifying it."""

    try:
        claims: dict[str, Any] = jwt.get_unverified_claims(token)
    except JWTError as exc:
        logger.warning("Could not decode access token: %s", exc)
        return None
    for claim in _USER_ID_CLAIMS:
        value = claims.get(claim)
        if value not in (None, ""):
            return str(value)
    return None


class SessionStore:
    """Reads and writes the session file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    async def load(self) -> Session:
        """Return the stored session, or an empty one when none exists."""

        async with self._lock:
            return await self._read()

    async def _read(self) -> Session:
        if not self._path.exists():
            return Session()
        data = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Session file %s is corrupted; ignoring it.", self._path)
            return Session()
        return Session(**{key: payload.get(key) for key in ("access_token", "refresh_token", "user_id")})

    async def _write(self, session: Session) -> None:
        body = json.dumps(asdict(session), ensure_ascii=False, indent=2)
        await asyncio.to_thread(self._write_file, self._path, body)

    @staticmethod
    def _write_file(path: Path, body: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")

    async def save_tokens(self, access_token: str, refresh_token: str | None = None) -> Session:
        """Store new tokens and the user id they carry."""

        async with self._lock:
            session = await self._read()
            session.access_token = access_token
            if refresh_token is not None:
                session.refresh_token = refresh_token
            session.user_id = user_id_from_token(access_token) or session.user_id
            await self._write(session)
            return session

    async def get_access_token(self) -> Optional[str]:
        return (await self.load()).access_token

    async def get_user_id(self) -> Optional[int]:
        """Resolve the acting user, falling back to the access token claims."""

        async with self._lock:
            session = await self._read()
            raw = session.user_id
            if raw is None and session.access_token:
                raw = user_id_from_token(session.access_token)
                if raw is not None:
                    session.user_id = raw
                    await self._write(session)
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Stored user id %r is not numeric.", raw)
            return None

    async def clear(self) -> None:
        """Forget tokens and identity."""

        async with self._lock:
            if self._path.exists():
                await asyncio.to_thread(self._path.unlink)
