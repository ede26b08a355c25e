"""
Account orchestration: registration with a custodial wallet, login, profile
and stakeholder verification, each mirrored to the ledger on a best-effort
basis.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping

from blockchain import MirrorResult, log_mirror_result, mirror
from config import Settings
from database import User
from errors import DuplicateUserError, LedgerError, ValidationError
from schemas import UserRole
from services.credentials import CredentialStore, hash_password
from utils import mask_phone
from wallet import WalletService

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


@dataclass
class Registration:
    user: User
    ledger: List[MirrorResult] = field(default_factory=list)


@dataclass
class Verification:
    user: User
    ledger: MirrorResult


class AccountService:
    def __init__(self, credentials: CredentialStore, wallet: WalletService, ledger: Any, settings: Settings):
        self.credentials = credentials
        self.wallet = wallet
        self.ledger = ledger
        self.settings = settings

    async def register(self, fields: Mapping[str, Any]) -> Registration:
        """Create the user and a custodial wallet, then mirror the stakeholder.

        Storing the user is the only step that can fail the registration.
        Funding, on-chain registration and auto-verification are reported
        per step in ``Registration.ledger``.
        """
        password = fields.get("password") or ""
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        try:
            role = UserRole(int(fields.get("role")))
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid role", details="role must be 0-3") from exc

        phone = (fields.get("phone") or "").strip()
        if self.credentials.get_by_phone(phone) is not None:
            # Checked up front so no wallet is minted for a duplicate
            raise DuplicateUserError("User with this phone number already exists")

        wallet = self.wallet.generate_wallet()
        # Key derivation and hashing are CPU bound; keep them off the event loop
        encrypted = await asyncio.to_thread(self.wallet.encrypt_private_key, wallet["private_key"], password)
        password_hash = await asyncio.to_thread(hash_password, password)

        user = self.credentials.register(
            phone=phone,
            name=fields.get("name"),
            location=fields.get("location"),
            role=role,
            wallet_address=wallet["address"],
            encrypted_private_key=self.wallet.serialize(encrypted),
            password_hash=password_hash,
            gps_coordinates=fields.get("gps_coordinates"),
        )
        logger.info("Registered %s %s with wallet %s", role.label, mask_phone(phone), user.wallet_address)

        registration = Registration(user=user)
        subject = f"user {user.id}"

        funded = await mirror("fundWallet", self.ledger.fund_wallet(user.wallet_address))
        log_mirror_result(logger, funded, subject)
        registration.ledger.append(funded)

        if not funded.confirmed:
            registration.ledger.append(MirrorResult.skipped("registerStakeholder", "wallet has no gas funds"))
            return registration

        registered = await mirror(
            "registerStakeholder",
            self.ledger.register_stakeholder(wallet["private_key"], user.name, user.location, int(role)),
        )
        log_mirror_result(logger, registered, subject)
        registration.ledger.append(registered)

        if self.settings.AUTO_VERIFY_USERS and registered.confirmed:
            verification = await self.verify_user(user.id)
            registration.user = verification.user
            registration.ledger.append(verification.ledger)

        return registration

    async def sync_verification(self, user: User) -> User:
        """Adopt a verification that happened directly on the ledger."""
        if user.is_verified:
            return user
        try:
            on_chain = await self.ledger.is_stakeholder_verified(user.wallet_address)
        except LedgerError as exc:
            logger.warning("Could not sync verification for user %s: %s", user.id, exc.message)
            return user
        if on_chain:
            logger.info("User %s verified on-chain, updating database", user.id)
            return self.credentials.verify(user.id)
        return user

    async def login(self, phone: str, password: str) -> User:
        user = await asyncio.to_thread(self.credentials.authenticate, phone, password)
        user = await self.sync_verification(user)
        logger.info("User %s logged in (%s)", user.id, mask_phone(user.phone))
        return user

    async def profile(self, user_id: int) -> User:
        return await self.sync_verification(self.credentials.get(user_id))

    async def verify_user(self, user_id: int) -> Verification:
        user = self.credentials.verify(user_id)
        result = await mirror("verifyStakeholder", self.ledger.verify_stakeholder(user.wallet_address))
        log_mirror_result(logger, result, f"user {user_id}")
        return Verification(user=user, ledger=result)
