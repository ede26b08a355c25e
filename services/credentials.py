"""User records: phone/wallet uniqueness, password hashes and verification."""

from __future__ import annotations

import logging
from typing import List, Optional

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from database import Database, User
from errors import AuthenticationError, DuplicateUserError, NotFoundError, ValidationError
from schemas import UserRole
from utils import mask_phone

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash and salt a password using bcrypt"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    """Check if provided password matches hash using bcrypt"""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash at all
        return False


class CredentialStore:
    def __init__(self, db: Database):
        self.db = db

    def register(
        self,
        phone: str,
        name: str,
        location: str,
        role: UserRole,
        wallet_address: str,
        encrypted_private_key: str,
        password_hash: str,
        gps_coordinates: Optional[str] = None,
    ) -> User:
        phone = (phone or "").strip()
        if not phone or not name or not location:
            raise ValidationError("Phone, name and location are required")

        with self.db.session_scope() as session:
            existing = session.scalar(select(User.id).where(User.phone == phone))
            if existing is not None:
                logger.info("Registration rejected, phone %s already registered", mask_phone(phone))
                raise DuplicateUserError("User with this phone number already exists")

            user = User(
                phone=phone,
                name=name.strip(),
                location=location.strip(),
                gps_coordinates=gps_coordinates,
                role=int(role),
                wallet_address=wallet_address,
                encrypted_private_key=encrypted_private_key,
                password_hash=password_hash,
                is_verified=False,
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError as exc:
                # Lost a race on phone, or the wallet address collided
                raise DuplicateUserError("User with this phone number or wallet already exists") from exc

        logger.info("User %s stored (phone %s, wallet %s)", user.id, mask_phone(phone), wallet_address)
        return user

    def get(self, user_id: int) -> User:
        with self.db.session_scope() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", details=f"user id {user_id}")
        return user

    def get_by_phone(self, phone: str) -> Optional[User]:
        with self.db.session_scope() as session:
            return session.scalar(select(User).where(User.phone == (phone or "").strip()))

    def get_by_wallet(self, address: str) -> Optional[User]:
        with self.db.session_scope() as session:
            return session.scalar(select(User).where(func.lower(User.wallet_address) == (address or "").lower()))

    def verify(self, user_id: int) -> User:
        """Set the verification flag. Calling it again is a no-op."""
        with self.db.session_scope() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", details=f"user id {user_id}")
            if not user.is_verified:
                user.is_verified = True
                logger.info("User %s verified", user_id)
        return user

    def authenticate(self, phone: str, password: str) -> User:
        user = self.get_by_phone(phone)
        if user is None or not check_password(password or "", user.password_hash):
            raise AuthenticationError("Invalid credentials")
        return user

    def list_by_role(self, role: UserRole, verified_only: bool = True) -> List[User]:
        with self.db.session_scope() as session:
            query = select(User).where(User.role == int(role))
            if verified_only:
                query = query.where(User.is_verified.is_(True))
            return list(session.scalars(query.order_by(User.name)))

    def counts(self) -> dict:
        with self.db.session_scope() as session:
            total = session.scalar(select(func.count(User.id)))
            verified = session.scalar(select(func.count(User.id)).where(User.is_verified.is_(True)))
        return {"total": total or 0, "verified": verified or 0}
