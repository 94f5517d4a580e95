"""
Cryptographic primitives for the settlement network.

Submitters sign transactions with ECDSA (P-256). Validators sign votes with
Ed25519 keys from PyNaCl. Everything is hashed with Keccak-256.
"""
from Crypto.Hash import keccak
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.exceptions import InvalidSignature
import nacl.signing
import nacl.exceptions


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


# --- Submitter keys (ECDSA) ---

def generate_key_pair() -> tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """Generates an ECDSA private/public key pair (SECP256R1)."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    public_key = private_key.public_key()
    return private_key, public_key


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Serializes a public key object into PEM format (string)."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode('utf-8')


def deserialize_public_key(pem_data: str) -> ec.EllipticCurvePublicKey:
    """Deserializes a public key from a PEM formatted string."""
    return serialization.load_pem_public_key(pem_data.encode('utf-8'))


def sign(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    """Signs byte data using ECDSA with SHA256."""
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def verify_signature(public_key_pem: str, signature: bytes, data: bytes) -> bool:
    """Verifies an ECDSA/SHA256 signature. Malformed keys count as failures."""
    try:
        public_key = deserialize_public_key(public_key_pem)
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


# --- Validator keys (Ed25519) ---

def generate_validator_keypair() -> tuple[nacl.signing.SigningKey, nacl.signing.VerifyKey]:
    """Generates an Ed25519 signing key for casting votes."""
    signing_key = nacl.signing.SigningKey.generate()
    return signing_key, signing_key.verify_key


def validator_address(verify_key: nacl.signing.VerifyKey) -> str:
    """Hex address of a validator, derived from its verify key."""
    return generate_hash(bytes(verify_key))[:20].hex()


def sign_vote(signing_key: nacl.signing.SigningKey, data: bytes) -> bytes:
    """Detached Ed25519 signature over vote data."""
    return signing_key.sign(data).signature


def verify_vote_signature(verify_key_hex: str, signature: bytes, data: bytes) -> bool:
    """Verify a detached Ed25519 vote signature."""
    try:
        verify_key = nacl.signing.VerifyKey(bytes.fromhex(verify_key_hex))
        verify_key.verify(data, signature)
        return True
    except (nacl.exceptions.BadSignatureError, ValueError, TypeError):
        # Catch both cryptographic failures and format/length errors
        return False
