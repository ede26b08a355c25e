"""
Batch records: creation with the initial harvest event, lineage-aware
history reads and the listings behind the dashboard endpoints.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, select

from blockchain import MirrorResult, log_mirror_result, mirror
from database import Batch, Database, HandoffEvent, User, utcnow
from errors import NotFoundError, PermissionDeniedError, ValidationError
from schemas import BatchStatus, HandoffEventType, UserRole
from services.handoff import receivable_status
from services.qr import QRService
from utils import round_quantity
from wallet import WalletService

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("produce", "variety", "quality_grade", "farm_location")


def generate_batch_number(produce: str) -> str:
    now_ms = int(time.time() * 1000)
    days = now_ms // 86_400_000
    # Suffix keeps two batches created in the same millisecond apart
    return f"BATCH_{produce.strip().upper().replace(' ', '_')}_{days}_{now_ms}_{secrets.token_hex(2).upper()}"


@dataclass
class BatchCreation:
    batch: Batch
    ledger: MirrorResult


class BatchService:
    def __init__(self, db: Database, ledger: Any, wallet: WalletService, qr: QRService):
        self.db = db
        self.ledger = ledger
        self.wallet = wallet
        self.qr = qr

    async def create_batch(
        self,
        fields: Mapping[str, Any],
        producer_id: int,
        password: Optional[str] = None,
    ) -> BatchCreation:
        for name in REQUIRED_FIELDS:
            if not (fields.get(name) or "").strip():
                raise ValidationError(f"{name} is required")
        quantity = fields.get("quantity")
        price = fields.get("price")
        if quantity is not None:
            quantity = round_quantity(quantity)
        if quantity is None or quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if price is None or float(price) < 0:
            raise ValidationError("Price must not be negative")

        signer_key: Optional[str] = None

        with self.db.session_scope() as session:
            producer = session.get(User, producer_id)
            if producer is None:
                raise NotFoundError("User not found", details=f"user id {producer_id}")
            if producer.role != UserRole.FARMER:
                raise PermissionDeniedError("Only farmers can create batches")

            if password:
                signer_key = await asyncio.to_thread(
                    self.wallet.decrypt_private_key, producer.encrypted_private_key, password
                )

            harvested_at = utcnow()
            batch = Batch(
                batch_number=generate_batch_number(fields["produce"]),
                producer_id=producer.id,
                produce=fields["produce"].strip(),
                variety=fields["variety"].strip(),
                quantity=quantity,
                price=float(price),
                quality_grade=fields["quality_grade"].strip(),
                is_organic=bool(fields.get("is_organic", False)),
                farm_location=fields["farm_location"].strip(),
                gps_coordinates=fields.get("gps_coordinates"),
                harvest_date=harvested_at,
                current_holder_id=producer.id,
                status=int(BatchStatus.HARVESTED),
                photo_url=fields.get("photo_url"),
                metadata_url=fields.get("metadata_url"),
            )
            session.add(batch)
            session.flush()

            session.add(
                HandoffEvent(
                    batch_id=batch.id,
                    from_user_id=None,
                    to_user_id=producer.id,
                    event_type=HandoffEventType.HARVEST.value,
                    status=int(BatchStatus.HARVESTED),
                    quantity=batch.quantity,
                    price=batch.price,
                    location=batch.farm_location,
                    gps_coordinates=batch.gps_coordinates,
                    photo_url=batch.photo_url,
                    notes="Harvested",
                    created_at=harvested_at,
                )
            )
            batch.qr_code = self.qr.generate(batch, producer.name)["dataUrl"]
            session.flush()
            session.refresh(batch)

            producer_verified = producer.is_verified

        logger.info(
            "Batch %s created by farmer %s (%s %s, qty %s)",
            batch.batch_number,
            producer_id,
            batch.produce,
            batch.variety,
            batch.quantity,
        )

        result = await self._mirror_registration(batch, signer_key, producer_verified, fields)
        log_mirror_result(logger, result, f"batch {batch.batch_number}")
        return BatchCreation(batch=batch, ledger=result)

    async def _mirror_registration(
        self,
        batch: Batch,
        signer_key: Optional[str],
        producer_verified: bool,
        fields: Mapping[str, Any],
    ) -> MirrorResult:
        action = "registerProduct"
        if not producer_verified:
            return MirrorResult.skipped(action, "farmer is not verified")
        if signer_key is None:
            return MirrorResult.skipped(action, "no wallet password supplied")

        result = await mirror(
            action,
            self.ledger.register_product(
                signer_key,
                batch.produce,
                batch.variety,
                batch.farm_location,
                batch.quantity,
                batch.quality_grade,
                batch.is_organic,
                batch.price,
                fields.get("metadata_url") or "",
            ),
        )
        if result.confirmed:
            product_id = result.receipt.data.get("productId") if result.receipt else None
            with self.db.session_scope() as session:
                stored = session.get(Batch, batch.id)
                stored.registration_tx_hash = result.tx_hash
                if product_id is not None:
                    stored.blockchain_id = int(product_id)
            batch.registration_tx_hash = result.tx_hash
            if product_id is not None:
                batch.blockchain_id = int(product_id)
        return result

    def get_batch(self, batch_id: int) -> Batch:
        with self.db.session_scope() as session:
            batch = session.get(Batch, batch_id)
        if batch is None:
            raise NotFoundError("Batch not found", details=f"batch id {batch_id}")
        return batch

    def get_batch_by_number(self, batch_number: str) -> Batch:
        with self.db.session_scope() as session:
            batch = session.scalar(select(Batch).where(Batch.batch_number == batch_number))
        if batch is None:
            raise NotFoundError("Batch not found", details=f"batch number {batch_number}")
        return batch

    def _list(self, *criteria) -> List[Batch]:
        with self.db.session_scope() as session:
            query = select(Batch).where(*criteria).order_by(Batch.created_at.desc(), Batch.id.desc())
            return list(session.scalars(query).unique())

    def list_produced_by(self, user_id: int) -> List[Batch]:
        return self._list(Batch.producer_id == user_id)

    def list_held_by(self, user_id: int) -> List[Batch]:
        return self._list(Batch.current_holder_id == user_id)

    def list_all(self) -> List[Batch]:
        return self._list()

    def list_available_for(self, user: User) -> List[Batch]:
        """Batches the user's role may receive next."""
        status = receivable_status(UserRole(user.role))
        if status is None:
            return []
        return self._list(
            Batch.status == int(status),
            Batch.quantity > 0,
            Batch.current_holder_id != user.id,
        )

    def get_batch_history(self, batch_id: int) -> List[HandoffEvent]:
        """Ordered custody history, oldest first.

        A remainder batch shares its parent's history up to the split, so the
        lineage is walked upwards and each ancestor contributes the events it
        had when the child was split off.
        """
        with self.db.session_scope() as session:
            batch = session.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError("Batch not found", details=f"batch id {batch_id}")

            events: List[HandoffEvent] = []
            current, upto = batch, None
            while current is not None:
                query = select(HandoffEvent).where(HandoffEvent.batch_id == current.id)
                if upto is not None:
                    query = query.where(HandoffEvent.id <= upto)
                events.extend(session.scalars(query).unique())
                if current.parent_batch_id is None:
                    break
                upto = current.split_after_event_id
                current = session.get(Batch, current.parent_batch_id)

        events.sort(key=lambda event: (event.created_at, event.id))
        return events

    def counts(self) -> Dict[str, int]:
        with self.db.session_scope() as session:
            total = session.scalar(select(func.count(Batch.id))) or 0
            on_chain = session.scalar(select(func.count(Batch.id)).where(Batch.blockchain_id.is_not(None))) or 0
            events = session.scalar(select(func.count(HandoffEvent.id))) or 0
            mirrored = session.scalar(select(func.count(HandoffEvent.id)).where(HandoffEvent.tx_hash.is_not(None))) or 0
        return {
            "batches": total,
            "batchesOnChain": on_chain,
            "events": events,
            "eventsOnChain": mirrored,
        }
