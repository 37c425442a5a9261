import struct

_U64 = struct.Struct(">Q")
U64_MAX = 2**64 - 1


def u64_to_bytes(n: int) -> bytes:
    """Encode n as 8 bytes, most-significant byte first.

    Bucket keys are compared with memcmp, so big-endian keeps cursor order
    equal to numeric order.
    """
    if n < 0 or n > U64_MAX:
        raise ValueError(f"value out of uint64 range: {n}")
    return _U64.pack(n)
