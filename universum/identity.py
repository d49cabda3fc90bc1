import hashlib
import hmac
import json
import logging
import secrets
from typing import Optional

from .locales import Translator
from .persistence import SESSION_KEY, USERS_DB_KEY, KeyValueStorage, WorkspacePersistence, read_users
from .schemas import StoredUser, UserRecord

logger = logging.getLogger("uvicorn.error")


class AccountError(ValueError):
    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


def hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), 120_000)
    return digest.hex()


class AccountService:
    """Register/login/logout. Identity only selects the persistence namespace."""

    def __init__(self, storage: KeyValueStorage, persistence: WorkspacePersistence, t: Translator):
        self.storage = storage
        self.persistence = persistence
        self.t = t

    @property
    def current_user(self) -> Optional[UserRecord]:
        return self.persistence.workspace.user

    async def restore_session(self) -> Optional[UserRecord]:
        raw = await self.storage.get(SESSION_KEY)
        if not raw:
            return None
        try:
            return UserRecord.model_validate(json.loads(raw))
        except Exception as exc:
            logger.warning("Discarding unreadable session: %s", exc)
            await self.storage.remove(SESSION_KEY)
            return None

    async def register(self, name: str, email: str, password: str) -> UserRecord:
        email = email.strip().lower()
        users, _ = await read_users(self.storage)
        if any(u.get("email") == email for u in users):
            raise AccountError(self.t("register_user_exists"), "user_exists")
        salt = secrets.token_hex(16)
        stored = StoredUser(name=name.strip(), email=email, salt=salt, password_hash=hash_password(password, salt))
        users.append(stored.model_dump())
        await self.storage.set(USERS_DB_KEY, json.dumps(users, ensure_ascii=True))
        user = UserRecord(name=stored.name, email=stored.email)
        await self._sign_in(user)
        return user

    async def login(self, email: str, password: str) -> UserRecord:
        email = email.strip().lower()
        users, ok = await read_users(self.storage)
        if not ok:
            await self.storage.remove(USERS_DB_KEY)
        for raw in users:
            if raw.get("email") != email:
                continue
            try:
                stored = StoredUser.model_validate(raw)
            except Exception:
                break
            expected = hash_password(password, stored.salt)
            if hmac.compare_digest(expected, stored.password_hash):
                user = UserRecord(name=stored.name, email=stored.email)
                await self._sign_in(user)
                return user
            break
        raise AccountError(self.t("login_error"), "invalid_credentials")

    async def logout(self) -> None:
        user = self.current_user
        await self.persistence.flush()
        await self.storage.remove(SESSION_KEY)
        await self.persistence.load(None)
        logger.info("User %s signed out", user.email if user else "guest")

    async def _sign_in(self, user: UserRecord) -> None:
        await self.persistence.flush()
        await self.persistence.merge_guest_into(user.email)
        await self.storage.set(SESSION_KEY, json.dumps(user.model_dump(), ensure_ascii=True))
        await self.persistence.load(user)
        logger.info("User %s signed in", user.email)
