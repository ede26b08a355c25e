"""Service layer for the AgriTrace backend."""

from .accounts import AccountService, Registration, Verification
from .batches import BatchCreation, BatchService
from .credentials import CredentialStore
from .handoff import HandoffOutcome, HandoffWorkflow, next_transition
from .qr import QRService

__all__ = [
    "AccountService",
    "Registration",
    "Verification",
    "BatchCreation",
    "BatchService",
    "CredentialStore",
    "HandoffOutcome",
    "HandoffWorkflow",
    "next_transition",
    "QRService",
]
