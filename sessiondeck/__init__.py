"""
sessiondeck - Multi-account credential and session lifecycle manager.

Keeps several signed-in identities on one device, encrypts their tokens at
rest, exposes exactly one active identity, and keeps access tokens fresh:
  sessiondeck accounts    - list stored identities
  sessiondeck switch ID   - make another identity active
  sessiondeck refresh     - run the foreground refresh sweep
"""

__version__ = "0.3.0"

MAX_ACCOUNTS = 5

__all__ = [
    "__version__",
    "MAX_ACCOUNTS",
]
