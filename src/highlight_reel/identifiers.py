"""
Identifiers for uploaded objects.
"""

import random
import uuid


def new_id() -> str:
    """
    Generate a random version-4 style identifier.

    The value is 128 bits rendered as canonical hyphenated hex. The random
    source is non-cryptographic and seeded fresh on every call, so only
    probabilistic collision resistance is offered; callers must treat a
    duplicate-key insert as a fatal error rather than retrying the same id.
    """
    rng = random.Random()
    return str(uuid.UUID(int=rng.getrandbits(128), version=4))
