from typing import Iterable
from cryptography.hazmat.primitives import hashes

GENESIS_DIGEST = "0" * 64

# ----- content addressing -----
def sha256_hex(data: bytes) -> str:
    h = hashes.Hash(hashes.SHA256())
    h.update(data)
    return h.finalize().hex()

# ----- audit hash chain -----
def chain_digest(prev_digest: str, fields: Iterable[object]) -> str:
    # "|" separated so ("ab", "c") and ("a", "bc") never collide
    parts = [prev_digest] + ["" if f is None else str(f) for f in fields]
    payload = "|".join(p.replace("\\", "\\\\").replace("|", "\\|") for p in parts)
    return sha256_hex(payload.encode("utf-8"))
