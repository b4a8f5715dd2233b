#!/usr/bin/env python3
"""
Generate a merchant keypair for the promo service.

Writes the keypair as a JSON array of secret-key bytes (the Solana CLI format)
to MERCHANT_KEYPAIR_PATH, or to the path given as the first argument.
"""

import json
import sys
from pathlib import Path

from solders.keypair import Keypair

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config

keypair_path = Path(sys.argv[1] if len(sys.argv) > 1 else config.merchant_keypair_path)

if keypair_path.exists():
    print(f"❌ {keypair_path} already exists; refusing to overwrite it.")
    sys.exit(1)

print("🔑 Generating merchant keypair...")
print("=" * 60)

keypair = Keypair()
address = str(keypair.pubkey())

keypair_path.parent.mkdir(parents=True, exist_ok=True)
keypair_path.write_text(json.dumps(list(bytes(keypair))))

print("\n✅ Keypair written!\n")

print("📍 Merchant address (public key):")
print(f"   {address}\n")

print("🔐 Keypair file:")
print(f"   {keypair_path}\n")

print("=" * 60)
print("\n📝 Add to your .env file:\n")

print(f"MERCHANT_KEYPAIR_PATH={keypair_path}")
print(f"PLATFORM_TREASURY_ADDRESS={address}")

print("\n" + "=" * 60)
print("\n🪙 Next: fund the wallet with devnet SOL")
print("   Visit: https://faucet.solana.com/")
print(f"   Address: {address}\n")

print("✅ Then run: python scripts/init_config.py")
print("=" * 60)
