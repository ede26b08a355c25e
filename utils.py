#!/usr/bin/env python3
"""
Utility functions for AgriTrace backend
"""
import re
from typing import Optional
from config import settings

TX_HASH_PATTERN = re.compile(r'^0x[a-fA-F0-9]{64}$')
ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')


def is_valid_transaction_hash(tx_hash: Optional[str]) -> bool:
    """
    Validate if a transaction hash is a valid EVM transaction hash
    """
    if not tx_hash:
        return False
    return bool(TX_HASH_PATTERN.match(tx_hash))


def is_valid_address(address: Optional[str]) -> bool:
    if not address:
        return False
    return bool(ADDRESS_PATTERN.match(address))


def generate_explorer_url(tx_hash: Optional[str], explorer_tx_url: Optional[str] = None) -> Optional[str]:
    """
    Generate explorer URL for a transaction hash
    Returns None if the transaction hash is invalid
    """
    if not is_valid_transaction_hash(tx_hash):
        return None

    return f"{(explorer_tx_url or settings.EXPLORER_TX_URL).rstrip('/')}/{tx_hash}"


def mask_phone(phone: Optional[str]) -> str:
    """
    Hide the middle of a phone number for log output
    """
    if not phone:
        return "N/A"
    if len(phone) <= 6:
        return phone[:1] + "***"
    return f"{phone[:3]}***{phone[-3:]}"


def percentage(part: int, total: int) -> int:
    if not total:
        return 0
    return round(part * 100 / total)


# Quantities are tracked in kg to the gram
QUANTITY_DECIMALS = 3


def round_quantity(value: float) -> float:
    return round(float(value), QUANTITY_DECIMALS)
