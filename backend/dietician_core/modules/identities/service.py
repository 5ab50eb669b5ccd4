"""
Identity record service.

E-mail addresses are stored twice: as an AES-GCM blob for display and as a
SHA-256 lookup digest for equality queries. Both are always derived from the
same normalized value inside this service, and lookups never decrypt.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.crypto.canonicalization import normalize_identifier
from dietician_core.core.crypto.lookup import lookup_hash
from dietician_core.core.encryption import FieldCipher
from dietician_core.core.logging import get_logger
from dietician_core.core.security.display import display_identifier
from dietician_core.db.models import Role, User

logger = get_logger(__name__)

DEFAULT_SELF_SERVICE_ROLE = "PATIENT"


class IdentityAlreadyExists(ValueError):
    """Another identity record already uses this identifier."""


class IdentityNotFound(LookupError):
    """No identity record matches."""


class RoleNotFound(LookupError):
    """No role matches the given code or id."""


def _canonical(email: str) -> str:
    canonical = normalize_identifier(email)
    if not canonical:
        raise ValueError("email must not be empty")
    return canonical


class IdentityService:
    """Creates, finds and updates identity records."""

    def __init__(self, db: AsyncSession, cipher: FieldCipher) -> None:
        self._db = db
        self._cipher = cipher

    async def register(
        self,
        email: str,
        role_code: str,
        *,
        full_name: str | None = None,
        password_hash: str | None = None,
        email_verified: bool = False,
        google_id: str | None = None,
        profile_picture_url: str | None = None,
    ) -> User:
        """
        Create an identity record.

        ``password_hash`` must already be hashed by the caller. Raises
        ``IdentityAlreadyExists`` on a digest collision, ``RoleNotFound`` for an
        unknown role and ``EncryptionError`` if the e-mail cannot be sealed;
        in every failure case nothing is added to the session.
        """
        canonical = _canonical(email)
        search_key = lookup_hash(canonical)
        if await self._find_by_search_key(search_key) is not None:
            raise IdentityAlreadyExists("an account with this email already exists")

        role = await self._role_by_code(role_code)
        email_encrypted = self._cipher.encrypt(canonical)

        user = User(
            email_encrypted=email_encrypted,
            email_search=search_key,
            password_hash=password_hash,
            google_id=google_id,
            email_verified=email_verified,
            role=role,
            full_name=full_name,
            profile_picture_url=profile_picture_url,
            is_active=True,
        )
        try:
            # A concurrent registration can pass the digest check first; the
            # savepoint keeps the caller's transaction usable when it does.
            async with self._db.begin_nested():
                self._db.add(user)
                await self._db.flush()
        except IntegrityError as exc:
            logger.warning("identity_register_conflict", search_prefix=search_key[:8])
            raise IdentityAlreadyExists("an account with this email already exists") from exc

        logger.info(
            "identity_registered",
            user_id=user.id,
            role=role.role_code,
            search_prefix=search_key[:8],
        )
        return user

    async def find_by_identifier(self, email: str | None) -> User | None:
        """Find a record by e-mail through its lookup digest."""
        canonical = normalize_identifier(email)
        if not canonical:
            return None
        return await self._find_by_search_key(lookup_hash(canonical))

    async def exists(self, email: str | None) -> bool:
        return await self.find_by_identifier(email) is not None

    async def get(self, user_id: int) -> User:
        user = await self._db.get(User, user_id)
        if user is None:
            raise IdentityNotFound(f"user {user_id} not found")
        return user

    async def change_identifier(self, user: User, new_email: str) -> User:
        """Replace the e-mail, recomputing ciphertext and digest together."""
        canonical = _canonical(new_email)
        search_key = lookup_hash(canonical)

        other = await self._find_by_search_key(search_key)
        if other is not None and other.id != user.id:
            raise IdentityAlreadyExists("an account with this email already exists")

        email_encrypted = self._cipher.encrypt(canonical)
        user.email_encrypted = email_encrypted
        user.email_search = search_key
        await self._db.flush()

        logger.info("identity_identifier_changed", user_id=user.id, search_prefix=search_key[:8])
        return user

    async def provision_oauth(
        self,
        email: str,
        google_id: str,
        *,
        full_name: str | None = None,
        picture_url: str | None = None,
    ) -> User:
        """
        Resolve the identity for an OAuth login.

        Order: existing link by ``google_id``, then an existing record with the
        same e-mail (which gets linked and marked verified), else a new verified
        ``PATIENT`` record.
        """
        result = await self._db.execute(select(User).where(User.google_id == google_id))
        user = result.scalar_one_or_none()
        if user is not None:
            if picture_url and user.profile_picture_url != picture_url:
                user.profile_picture_url = picture_url
                await self._db.flush()
            return user

        user = await self.find_by_identifier(email)
        if user is not None:
            user.google_id = google_id
            user.email_verified = True
            if not user.full_name and full_name:
                user.full_name = full_name
            if picture_url:
                user.profile_picture_url = picture_url
            await self._db.flush()
            logger.info("identity_oauth_linked", user_id=user.id)
            return user

        return await self.register(
            email,
            DEFAULT_SELF_SERVICE_ROLE,
            full_name=full_name,
            email_verified=True,
            google_id=google_id,
            profile_picture_url=picture_url,
        )

    def display_identifier(self, user: User, *, masked: bool = False) -> str:
        """Decrypted e-mail, or the unavailable placeholder if it cannot be opened."""
        return display_identifier(user, self._cipher, masked=masked)

    async def set_active(self, user_id: int, active: bool) -> User:
        user = await self.get(user_id)
        if user.is_active != active:
            user.is_active = active
            await self._db.flush()
            logger.info("identity_active_changed", user_id=user.id, is_active=active)
        return user

    async def _find_by_search_key(self, search_key: str) -> User | None:
        result = await self._db.execute(select(User).where(User.email_search == search_key))
        return result.scalar_one_or_none()

    async def _role_by_code(self, role_code: str) -> Role:
        result = await self._db.execute(select(Role).where(Role.role_code == role_code))
        role = result.scalar_one_or_none()
        if role is None:
            raise RoleNotFound(f"role {role_code} not found")
        return role
