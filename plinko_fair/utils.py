# utils.py
"""
Utility functions for the Plinko fairness engine

Includes:
- Seed generation & commitment (SHA-256)
- Deterministic digest stream (seed pair + nonce -> unit interval)
- Robust Number formatting (Decimal/Float agnostic)

Compatibility:
- Supports Python 3.9+
- The digest stream is a frozen format: any change breaks every
  previously recorded game.
"""

from __future__ import annotations

import secrets
import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Union

# =========================
# LOGGING CONFIG
# =========================

# Module-level logger. In production, this propagates to the root logger.
logger = logging.getLogger("plinko.utils")

# Largest value of the 8 hex chars taken from each digest
MAX_SAMPLE = 0xFFFFFFFF


class EntropySourceFailure(RuntimeError):
    """The secure random source is unavailable. Fatal for seed creation."""


# =========================
# SEEDS & COMMITMENT
# =========================

def _token_hex(length: int) -> str:
    try:
        return secrets.token_hex(length)
    except (OSError, NotImplementedError) as e:
        logger.critical(f"Secure random source unavailable: {e}")
        raise EntropySourceFailure("Secure random source unavailable") from e


def generate_server_seed(length: int = 32) -> str:
    """
    Generate a cryptographically secure random server seed (hex).
    Kept secret until the player rotates it.
    """
    return _token_hex(length)


def generate_client_seed(length: int = 16) -> str:
    """
    Generate a cryptographically secure random client seed (hex).
    Used when the player does not supply their own.
    """
    return _token_hex(length)


def generate_unique_id(length: int = 8) -> str:
    """Short hex id for stored games."""
    return _token_hex(length)


def hash_sha256(value: str) -> str:
    """
    Compute standard SHA256 hash of a string.
    Used as the commitment published before the server seed is revealed.
    """
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def commitment_matches(server_seed: str, hashed_server_seed: str) -> bool:
    """
    Check a revealed server seed against the commitment published for it.
    """
    calculated = hash_sha256(server_seed)
    # constant_time_compare prevents timing attacks
    return hmac.compare_digest(calculated.encode("utf-8"), hashed_server_seed.lower().encode("utf-8"))


# =========================
# DIGEST STREAM
# =========================

def deterministic_random(server_seed: str, client_seed: str, nonce: int) -> float:
    """
    Map (server_seed, client_seed, nonce) to a float in [0, 1].

    SHA256 over "server:client:nonce", first 8 hex chars read as a
    big-endian unsigned 32-bit integer, divided by 0xFFFFFFFF.
    A digest starting with ffffffff yields exactly 1.0.
    """
    message = f"{server_seed}:{client_seed}:{nonce}"
    digest = hashlib.sha256(message.encode('utf-8')).hexdigest()
    return int(digest[:8], 16) / MAX_SAMPLE


# =========================
# FORMATTING
# =========================

NumberType = Union[float, Decimal, int, str]

def format_balance(amount: NumberType) -> str:
    """
    Format balance with 2 decimals.
    Handles float, Decimal, int, or string inputs safely.
    """
    try:
        val = float(amount)
        return f"{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Invalid balance format input: {amount}")
        return "0.00"


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier for logs (e.g., 'x0.5', 'x110').
    """
    try:
        val = float(mult)
        return f"x{val:g}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1"
