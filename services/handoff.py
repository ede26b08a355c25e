"""
Custody handoff workflow.

A batch moves farmer -> distributor -> retailer -> consumer. The recipient's
role decides which status the batch must currently be in:

    Distributor receives a Harvested batch     -> AtDistributor (Pickup)
    Retailer receives an AtDistributor batch   -> AtRetailer    (Delivery)
    Consumer receives an AtRetailer batch      -> Sold          (Sale)

InTransit mirrors the contract enum; no handoff produces it. Sold is terminal.

The handoff event, the batch update and (for a partial quantity) the remainder
batch are written in one database transaction. The ledger mirror runs after
the commit and can only attach a transaction hash to the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, NamedTuple, Optional

from sqlalchemy import func, select, update

from blockchain import MirrorResult, log_mirror_result, mirror
from database import Batch, Database, HandoffEvent, User
from errors import InvalidTransitionError, NotFoundError, ValidationError
from schemas import BatchStatus, HandoffEventType, UserRole
from utils import round_quantity
from wallet import WalletService

logger = logging.getLogger(__name__)


class Transition(NamedTuple):
    from_status: BatchStatus
    to_status: BatchStatus
    event_type: HandoffEventType


# recipient role -> allowed transition
TRANSITIONS: Dict[UserRole, Transition] = {
    UserRole.DISTRIBUTOR: Transition(BatchStatus.HARVESTED, BatchStatus.AT_DISTRIBUTOR, HandoffEventType.PICKUP),
    UserRole.RETAILER: Transition(BatchStatus.AT_DISTRIBUTOR, BatchStatus.AT_RETAILER, HandoffEventType.DELIVERY),
    UserRole.CONSUMER: Transition(BatchStatus.AT_RETAILER, BatchStatus.SOLD, HandoffEventType.SALE),
}

TERMINAL_STATUSES = frozenset({BatchStatus.SOLD})

HANDOFF_FIELDS = (
    "gps_coordinates",
    "temperature",
    "notes",
    "scan_location",
    "photo_url",
    "document_url",
)


def next_transition(recipient_role: UserRole, current_status: BatchStatus) -> Transition:
    """Return the transition for handing a batch in ``current_status`` to ``recipient_role``.

    Raises ``InvalidTransitionError`` for every other pairing.
    """
    current_status = BatchStatus(current_status)
    recipient_role = UserRole(recipient_role)

    if current_status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            "Batch has already been sold",
            details=f"status {current_status.label} is final",
        )

    transition = TRANSITIONS.get(recipient_role)
    if transition is None or transition.from_status != current_status:
        raise InvalidTransitionError(
            "Product not available for your role at this stage",
            details=f"a {recipient_role.label} cannot receive a batch that is {current_status.label}",
        )
    return transition


def receivable_status(role: UserRole) -> Optional[BatchStatus]:
    transition = TRANSITIONS.get(UserRole(role))
    return transition.from_status if transition else None


@dataclass
class HandoffOutcome:
    event: HandoffEvent
    batch: Batch
    remainder: Optional[Batch]
    ledger: MirrorResult


class HandoffWorkflow:
    def __init__(self, db: Database, ledger: Any, wallet: WalletService):
        self.db = db
        self.ledger = ledger
        self.wallet = wallet

    async def record_handoff(
        self,
        batch_id: int,
        from_id: int,
        to_id: int,
        fields: Mapping[str, Any],
    ) -> HandoffOutcome:
        """Hand ``batch_id`` from ``from_id`` to ``to_id``.

        ``fields`` carries ``price`` and ``location`` (required), optionally
        ``quantity`` (defaults to the whole batch), ``password`` (unlocks the
        sender's wallet for the ledger mirror) and the contextual metadata in
        ``HANDOFF_FIELDS``.
        """
        price = fields.get("price")
        location = (fields.get("location") or "").strip()
        if price is None or float(price) < 0:
            raise ValidationError("A non-negative price is required")
        if not location:
            raise ValidationError("Location is required")
        if from_id == to_id:
            raise InvalidTransitionError("Sender and recipient must be different stakeholders")

        password = fields.get("password")
        signer_key: Optional[str] = None

        with self.db.session_scope() as session:
            batch = session.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError("Batch not found", details=f"batch id {batch_id}")
            sender = session.get(User, from_id)
            recipient = session.get(User, to_id)
            if sender is None:
                raise NotFoundError("User not found", details=f"user id {from_id}")
            if recipient is None:
                raise NotFoundError("Recipient not found", details=f"user id {to_id}")

            if batch.current_holder_id != sender.id:
                raise InvalidTransitionError(
                    "Only the current holder can hand off this batch",
                    details=f"batch {batch.batch_number} is held by user {batch.current_holder_id}",
                )

            transition = next_transition(UserRole(recipient.role), BatchStatus(batch.status))

            available = round_quantity(batch.quantity)
            requested = fields.get("quantity")
            quantity = available if requested is None else round_quantity(requested)
            if quantity <= 0:
                raise ValidationError("Quantity must be positive")
            if quantity > available:
                raise ValidationError(
                    "Insufficient quantity",
                    details=f"requested {quantity}, available {available}",
                )

            # Unlock before writing anything so a wrong password rejects the handoff
            if password:
                signer_key = await asyncio.to_thread(
                    self.wallet.decrypt_private_key, sender.encrypted_private_key, password
                )

            # Claim the batch only if nobody moved it since it was read
            claimed = session.execute(
                update(Batch)
                .where(
                    Batch.id == batch.id,
                    Batch.current_holder_id == sender.id,
                    Batch.status == int(transition.from_status),
                    Batch.quantity == batch.quantity,
                )
                .values(
                    quantity=quantity,
                    price=float(price),
                    current_holder_id=recipient.id,
                    status=int(transition.to_status),
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise InvalidTransitionError(
                    "Batch was modified by a concurrent handoff",
                    details=f"batch {batch.batch_number}",
                )

            remainder = None
            remaining = round_quantity(available - quantity)
            if remaining > 0:
                remainder = self._split_remainder(session, batch, remaining)

            event = HandoffEvent(
                batch_id=batch.id,
                from_user_id=sender.id,
                to_user_id=recipient.id,
                event_type=transition.event_type.value,
                status=int(transition.to_status),
                quantity=quantity,
                price=float(price),
                location=location,
                **{name: fields.get(name) for name in HANDOFF_FIELDS},
            )
            session.add(event)
            session.flush()
            session.refresh(batch)
            session.refresh(event)

            ledger_plan = {
                "blockchain_id": batch.blockchain_id,
                "sender_verified": sender.is_verified,
                "recipient_verified": recipient.is_verified,
                "recipient_address": recipient.wallet_address,
            }

        logger.info(
            "Batch %s handed from user %s to user %s (%s, qty %s, status %s)",
            batch.batch_number,
            from_id,
            to_id,
            transition.event_type.value,
            quantity,
            transition.to_status.label,
        )
        if remainder is not None:
            logger.info(
                "Remainder %s of %s kept by user %s (qty %s)",
                remainder.batch_number,
                batch.batch_number,
                from_id,
                remainder.quantity,
            )

        result = await self._mirror_transfer(event, signer_key, ledger_plan)
        log_mirror_result(logger, result, f"batch {batch.batch_number}")
        return HandoffOutcome(event=event, batch=batch, remainder=remainder, ledger=result)

    def _split_remainder(self, session, batch: Batch, remaining: float) -> Batch:
        last_event_id = session.scalar(
            select(func.max(HandoffEvent.id)).where(HandoffEvent.batch_id == batch.id)
        )
        if last_event_id is None and batch.parent_batch_id is not None:
            # A remainder that never moved on its own inherits its split point
            last_event_id = batch.split_after_event_id
        siblings = session.scalar(
            select(func.count(Batch.id)).where(Batch.parent_batch_id == batch.id)
        ) or 0

        remainder = Batch(
            batch_number=f"{batch.batch_number}-R{siblings + 1}",
            producer_id=batch.producer_id,
            produce=batch.produce,
            variety=batch.variety,
            quantity=remaining,
            price=batch.price,
            quality_grade=batch.quality_grade,
            is_organic=batch.is_organic,
            farm_location=batch.farm_location,
            gps_coordinates=batch.gps_coordinates,
            harvest_date=batch.harvest_date,
            current_holder_id=batch.current_holder_id,
            status=batch.status,
            photo_url=batch.photo_url,
            metadata_url=batch.metadata_url,
            qr_code=None,
            blockchain_id=None,
            parent_batch_id=batch.id,
            split_after_event_id=last_event_id,
        )
        session.add(remainder)
        session.flush()
        session.refresh(remainder)
        return remainder

    async def _mirror_transfer(self, event: HandoffEvent, signer_key: Optional[str], plan: Dict[str, Any]) -> MirrorResult:
        action = "transferProduct"
        if plan["blockchain_id"] is None:
            return MirrorResult.skipped(action, "batch is not registered on-chain")
        if not (plan["sender_verified"] and plan["recipient_verified"]):
            return MirrorResult.skipped(action, "both stakeholders must be verified")
        if signer_key is None:
            return MirrorResult.skipped(action, "no wallet password supplied")

        result = await mirror(
            action,
            self.ledger.transfer_product(
                signer_key,
                plan["blockchain_id"],
                plan["recipient_address"],
                event.quantity,
                event.price,
                event.location,
            ),
        )
        if result.confirmed:
            self._attach_tx_hash(event, result.tx_hash)
        return result

    def _attach_tx_hash(self, event: HandoffEvent, tx_hash: str) -> None:
        with self.db.session_scope() as session:
            stored = session.get(HandoffEvent, event.id)
            if stored.tx_hash is None:
                stored.tx_hash = tx_hash
        event.tx_hash = tx_hash
