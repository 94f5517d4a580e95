"""
Bit-path and bitmap encoding for sparse Merkle proofs.
"""

def bytes_to_bits(b: bytes) -> tuple[int, ...]:
    """Convert a byte string into a bit tuple, most significant bit first."""
    res = []
    for byte in b:
        for shift in range(7, -1, -1):
            res.append((byte >> shift) & 1)
    return tuple(res)

def bits_to_bytes(bits: tuple[int, ...]) -> bytes:
    """Convert a bit tuple back into a byte string."""
    if len(bits) % 8:
        raise ValueError("Bits must be a multiple of 8 in length")
    res = bytearray()
    for i in range(0, len(bits), 8):
        byte = 0
        for bit in bits[i:i + 8]:
            byte = (byte << 1) | bit
        res.append(byte)
    return bytes(res)

def encode_bitmap(flags: list[bool]) -> bytes:
    """
    Pack a list of flags into a bitmap.
    Flag i is stored in bit i (MSB-first), padded to a whole byte.
    """
    bits = [1 if f else 0 for f in flags]
    bits += [0] * (-len(bits) % 8)
    return bits_to_bytes(tuple(bits))

def decode_bitmap(bitmap: bytes, length: int) -> list[bool]:
    """Unpack the first `length` flags of a bitmap."""
    bits = bytes_to_bits(bitmap)
    if len(bits) < length:
        raise ValueError(f"Bitmap too short: {len(bits)} < {length}")
    return [bool(bit) for bit in bits[:length]]
