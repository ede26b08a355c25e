#!/usr/bin/env python3
"""
Generate the master wallet for the AgriTrace backend
"""
from config import settings
from wallet import WalletService


def generate_master_wallet():
    """Generate a new master wallet"""
    wallet = WalletService.generate_wallet()

    print("=== AgriTrace Master Wallet Generated ===")
    print(f"Address: {wallet['address']}")
    print(f"Private Key: {wallet['private_key']}")
    print()
    print("IMPORTANT:")
    print("1. This wallet pays gas for every new user wallet - keep it funded")
    print(f"2. Fund it with test tokens on {settings.NETWORK_NAME}")
    print("3. Deploy the AgriTrace contract from this wallet so it can verify stakeholders")
    print()
    print(f"Fund this address: {wallet['address']}")
    print()
    print("Update your .env file:")
    print(f"MASTER_PRIVATE_KEY={wallet['private_key']}")

    return wallet["address"], wallet["private_key"]


if __name__ == "__main__":
    generate_master_wallet()
