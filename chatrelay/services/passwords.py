# chatrelay/services/passwords.py

"""
Password hashing for protected rooms.

Room passwords are hashed with Argon2id and stored alongside the room. The
relay does not check them when a client joins; the hash is kept so a later
access policy has something to verify against.
"""

import os

from argon2 import PasswordHasher, Type

# TIME_COST: 1-10, MEMORY_COST: KiB, PARALLELISM: 1-16
TIME_COST = int(os.getenv("ARGON2_TIME_COST", "3"))
MEMORY_COST = int(os.getenv("ARGON2_MEMORY_COST", "65536"))  # 64MB
PARALLELISM = int(os.getenv("ARGON2_PARALLELISM", "1"))

if TIME_COST < 1 or TIME_COST > 10:
    raise ValueError(f"ARGON2_TIME_COST must be between 1 and 10, got {TIME_COST}")
if MEMORY_COST < 1024 or MEMORY_COST > 1048576:
    raise ValueError(f"ARGON2_MEMORY_COST must be between 1024 and 1048576, got {MEMORY_COST}")
if PARALLELISM < 1 or PARALLELISM > 16:
    raise ValueError(f"ARGON2_PARALLELISM must be between 1 and 16, got {PARALLELISM}")

_hasher = PasswordHasher(
    type=Type.ID,
    time_cost=TIME_COST,
    memory_cost=MEMORY_COST,
    parallelism=PARALLELISM,
)


def hash_password(password: str) -> str:
    """Hash a room password. CPU-bound; call it from a worker thread."""
    if not password:
        raise ValueError("Password cannot be empty")
    return _hasher.hash(password)
