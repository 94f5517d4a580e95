"""
Genesis Generation Tool

Initialises a settlement node database from a configuration file: the
registered markets, the initial validator set and any seeded state leaves.
Doing this from a reviewed file keeps the starting state auditable.
"""
import json
import argparse
from decimal import Decimal
from pathlib import Path

import nacl.signing

from gridsettle.consensus import ValidatorSet
from gridsettle.core import Market, StateLeaf, market_key
from gridsettle.crypto import validator_address
from gridsettle.db import DB
from gridsettle.markets import MarketRegistry
from gridsettle.state_tree import StateTreeManager


def apply_genesis(config: dict, db) -> bytes:
    """
    Register markets and validators and seed initial state into `db`.
    Returns the genesis state root.
    """
    # --- 1. Markets ---
    registry = MarketRegistry(db)
    for market_info in config.get('markets', []):
        registry.register(Market.from_dict(market_info))
    print(f"Registered {len(registry)} markets.")

    # --- 2. Validators ---
    validators = ValidatorSet(db)
    for validator_info in config.get('initial_validators', []):
        verify_key = validator_info['verify_key']
        address = validator_info.get('address') or \
            validator_address(nacl.signing.VerifyKey(bytes.fromhex(verify_key)))
        validators.add(address, int(validator_info['stake']), verify_key)
    print(f"Registered {len(validators)} validators, total stake {validators.total_stake}.")

    # --- 3. Seed prices ---
    leaves = {}
    for market_id, price in config.get('initial_prices', {}).items():
        market = registry.get(market_id)
        if market is None:
            raise ValueError(f"Initial price for unregistered market {market_id}")
        units = market.to_units(Decimal(str(price)))
        if not market.in_bounds(units):
            raise ValueError(f"Initial price {price} outside bounds of {market_id}")
        leaves[market_key(market_id)] = StateLeaf(latest_price=units)

    tree = StateTreeManager(db)
    root = tree.genesis(leaves) if leaves else tree.committed_root
    print(f"Seeded {len(leaves)} market prices.")
    return root


def create_genesis(config_path: str, output_db_path: str):
    """
    Initialise a node database from a genesis configuration.

    Args:
        config_path (str): Path to the genesis configuration JSON file.
        output_db_path (str): Path to store the new node database.
    """
    print(f"Loading genesis configuration from: {config_path}")
    with open(config_path, 'r') as f:
        config = json.load(f)

    # Ensure the output directory is clean
    db_path = Path(output_db_path)
    if db_path.exists():
        print(f"Error: Output database path '{db_path}' already exists. Please remove it first.")
        return

    db = DB(str(db_path))
    try:
        root = apply_genesis(config, db)
    finally:
        db.close()

    print("\nGenesis state created successfully!")
    print(f"  - State Root: {root.hex()}")
    print(f"Node database initialized at: {db_path}")


def generate_sample_config(output_path: str):
    """Generates a sample genesis.json configuration file."""
    keys = [nacl.signing.SigningKey.generate() for _ in range(3)]

    config = {
        "markets": [
            {"market_id": "PJM-RT", "min_price": "-150.00", "max_price": "3000.00", "precision": 2, "heartbeat": 60},
            {"market_id": "ERCOT-DA", "min_price": "-250.00", "max_price": "5000.00", "precision": 2, "heartbeat": 300},
        ],
        "initial_validators": [
            {"verify_key": bytes(k.verify_key).hex(), "stake": 1000} for k in keys
        ],
        "initial_prices": {"PJM-RT": "42.50"},
    }

    with open(output_path, 'w') as f:
        json.dump(config, f, indent=2)

    print(f"\nGenerated sample genesis configuration at: {output_path}")
    print("Please review and edit this file before creating the genesis state.")
    print("\nSample validator signing keys (DO NOT USE IN PRODUCTION):")
    for key in keys:
        print(f"  - {validator_address(key.verify_key)}: {bytes(key).hex()}")


def main():
    parser = argparse.ArgumentParser(description="Genesis Generation Tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parser_sample = subparsers.add_parser("sample-config", help="Generate a sample genesis.json")
    parser_sample.add_argument("--output", type=str, default="genesis.json", help="Output file path")

    parser_create = subparsers.add_parser("create", help="Create the genesis state from a config file")
    parser_create.add_argument("--config", type=str, default="genesis.json", help="Path to genesis config file")
    parser_create.add_argument("--output-db", type=str, required=True, help="Path for the new node database")

    args = parser.parse_args()

    if args.command == "sample-config":
        generate_sample_config(args.output)
    elif args.command == "create":
        create_genesis(args.config, args.output_db)


if __name__ == '__main__':
    main()
