"""
Random password generation for local admin rotation.
"""

import secrets
import string

SYMBOLS = '!@#$%^&*()-_=+[]{}:,.?'


def generate_password(length: int = 16, symbols: bool = True) -> str:
    """
    Generate a random password with at least one character of each class.

    Raises:
        ValueError: If length can't fit one character of every class
    """
    classes = [string.ascii_lowercase, string.ascii_uppercase, string.digits]
    if symbols:
        classes.append(SYMBOLS)

    if length < len(classes):
        raise ValueError(f"Password length must be at least {len(classes)}")

    alphabet = ''.join(classes)
    chars = [secrets.choice(c) for c in classes]
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]

    # SystemRandom shuffle so the guaranteed characters aren't always first
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)
