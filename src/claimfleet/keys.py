"""Secret (family seed) validation and wallet derivation."""

from xrpl import CryptoAlgorithm
from xrpl.core.addresscodec import XRPLAddressCodecException, decode_seed
from xrpl.wallet import Wallet


def normalize_secret(secret: str) -> str:
    return secret.strip()


def validate_secret(secret: str) -> bool:
    """True when ``secret`` is a well-formed seed with a good checksum."""
    try:
        decode_seed(normalize_secret(secret))
    except (XRPLAddressCodecException, ValueError):
        return False
    return True


def derive_wallet(secret: str) -> Wallet:
    """Derive the account keypair for a seed.

    The algorithm is whatever the seed encodes (``sEd...`` seeds are ed25519,
    everything else secp256k1), and the derivation is always account index 0
    of that seed, so the same seed always maps to the same address.
    """
    seed = normalize_secret(secret)
    _, algorithm = decode_seed(seed)
    return Wallet.from_seed(seed, algorithm=CryptoAlgorithm(algorithm))


def short(address: str | None) -> str:
    """First six characters of an address, for log lines."""
    return f"{address[:6]}..." if address else "?"
